from __future__ import annotations

import logging
from typing import Callable

from .config import ClientConfig
from .errors import PersistenceError, ValidationError
from .models import SESSIONS, Session, _now_ms
from .store import Store

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the local codename and the session row for the current channel.

    A codename is a bare display-name claim; duplicates across sessions are
    allowed. Only this class creates session rows.
    """

    def __init__(
        self,
        store: Store,
        config: ClientConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self.config = config or ClientConfig()
        self._now = now_func
        self._session: Session | None = None

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def joined(self) -> bool:
        return self._session is not None

    @property
    def display_name(self) -> str | None:
        return self._session.display_name if self._session else None

    @property
    def channel_id(self) -> str | None:
        return self._session.channel_id if self._session else None

    def validate_codename(self, name: str) -> str:
        if not isinstance(name, str):
            raise ValidationError("codename must be text")
        clean = name.strip()
        if not clean:
            raise ValidationError("codename is required")
        if len(clean) > self.config.max_codename_length:
            raise ValidationError(f"codename must be at most {self.config.max_codename_length} characters")
        return clean

    async def join(self, display_name: str, channel_id: str) -> Session:
        """Persist a new online session for ``channel_id``.

        Nothing local changes when the store rejects the row.
        """

        clean = self.validate_codename(display_name)
        if not channel_id:
            raise ValidationError("a channel is required to join")
        session = await self._create(clean, channel_id)
        self._session = session
        logger.info("joined channel %s as %s (%s)", channel_id, clean, session.id)
        return session

    async def move_to(self, channel_id: str) -> Session:
        """Scope the user to ``channel_id`` with a fresh session and take the old one offline.

        If the new row cannot be created the previous session is kept. A
        failure to take the previous session offline is raised after the move
        has completed.
        """

        previous = self._require_session()
        if previous.channel_id == channel_id:
            return previous
        session = await self._create(previous.display_name, channel_id)
        self._session = session
        await self._mark_offline(previous)
        return session

    async def leave(self) -> None:
        session = self._session
        if session is None:
            return
        self._session = None
        await self._mark_offline(session)

    async def touch(self) -> Session:
        session = self._require_session()
        try:
            updated = await self._store.update(
                SESSIONS, session.id, {"last_seen_ms": self._now(), "is_online": True}
            )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"could not refresh session {session.id}: {exc}") from exc
        if self._session is not None and self._session.id == updated.id:
            self._session = updated
        return updated

    def _require_session(self) -> Session:
        if self._session is None:
            raise ValidationError("join with a codename first")
        return self._session

    async def _create(self, display_name: str, channel_id: str) -> Session:
        try:
            record = await self._store.insert(
                SESSIONS,
                {"display_name": display_name, "channel_id": channel_id, "is_online": True},
            )
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"could not create session: {exc}") from exc
        return record

    async def _mark_offline(self, session: Session) -> None:
        try:
            await self._store.update(SESSIONS, session.id, {"is_online": False, "last_seen_ms": self._now()})
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"could not mark session {session.id} offline: {exc}") from exc
        logger.info("session %s in channel %s is now offline", session.id, session.channel_id)
