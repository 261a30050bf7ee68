"""View-facing facade: user intents in, a render snapshot out."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .config import ClientConfig
from .directory import ChannelDirectory
from .errors import ChatError, LoadError, PersistenceError, ValidationError
from .message_stream import MessageStream
from .models import Channel, Message, Session, _now_ms
from .presence import PresenceTracker
from .session_manager import SessionManager
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewState:
    channels: List[Channel]
    selected_channel_id: Optional[str]
    messages: List[Message]
    online: List[Session]
    joined: bool
    join_pending: bool
    display_name: Optional[str]
    messages_stale: bool
    roster_stale: bool
    last_error: Optional[str]


class ChatClient:
    """Wires the session manager, directory, message stream and presence tracker together.

    Nothing is loaded before a codename has been submitted. Joining loads
    the directory so the session can be scoped to the default channel, and
    the stream and roster are bound only once the session row exists.
    """

    def __init__(
        self,
        store: Store,
        feed,
        config: ClientConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or ClientConfig()
        self.sessions = SessionManager(store, self.config, now_func=now_func)
        self.directory = ChannelDirectory(store, self.config)
        self.stream = MessageStream(store, feed, self.sessions, self.config, on_error=self._record_error)
        self.presence = PresenceTracker(store, feed, self.config, on_error=self._record_error)
        self.last_error: ChatError | None = None
        self._join_pending = False
        self._switch_lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def joined(self) -> bool:
        return self.sessions.joined

    @property
    def join_pending(self) -> bool:
        return self._join_pending

    async def join_with_codename(self, name: str) -> Session:
        if self.sessions.joined:
            raise ValidationError("already joined")
        if self._join_pending:
            raise ValidationError("join already in progress")
        clean = self.sessions.validate_codename(name)

        self._join_pending = True
        try:
            await self.directory.load_all()
            channel = self.directory.selected
            if channel is None:
                raise LoadError("no channels available")
            session = await self.sessions.join(clean, channel.id)
        except ChatError:
            self.directory.reset()
            raise
        finally:
            self._join_pending = False

        try:
            await self._bind(channel.id)
        except ChatError as exc:
            # The session exists; the views stay stale until refresh().
            self._record_error(exc)
        return session

    async def select_channel(self, channel_id: str) -> bool:
        """Switch to ``channel_id``. Returns False when it is already selected."""

        if not self.sessions.joined:
            raise ValidationError("join with a codename first")
        async with self._switch_lock:
            if channel_id == self.directory.selected_id:
                return False
            if self.directory.get(channel_id) is None:
                raise ValidationError(f"unknown channel: {channel_id}")
            offline_error = await self._move_session(channel_id)
            self.directory.select(channel_id)
        if offline_error is not None:
            self._record_error(offline_error)
        await self._bind(channel_id)
        return True

    async def send_message(self, text: str) -> Message:
        if not self.sessions.joined:
            raise ValidationError("join with a codename first")
        return await self.stream.send(text)

    async def refresh(self) -> None:
        """Reload the directory and rebind the selected channel.

        If the selected channel disappeared the directory falls back to the
        first channel and the session follows it there.
        """

        if not self.sessions.joined:
            raise ValidationError("join with a codename first")
        offline_error: PersistenceError | None = None
        async with self._switch_lock:
            await self.directory.load_all()
            channel_id = self.directory.selected_id
            if channel_id is None:
                return
            if channel_id != self.sessions.channel_id:
                offline_error = await self._move_session(channel_id)
        if offline_error is not None:
            self._record_error(offline_error)
        await self._bind(channel_id)

    def render(self) -> ViewState:
        selected = self.directory.selected_id
        message_state = self.stream.state
        roster_state = self.presence.state
        return ViewState(
            channels=self.directory.channels,
            selected_channel_id=selected,
            messages=list(message_state.messages) if message_state.channel_id == selected else [],
            online=list(roster_state.sessions) if roster_state.channel_id == selected else [],
            joined=self.sessions.joined,
            join_pending=self._join_pending,
            display_name=self.sessions.display_name,
            messages_stale=message_state.stale,
            roster_stale=roster_state.stale,
            last_error=str(self.last_error) if self.last_error is not None else None,
        )

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        try:
            await self._heartbeat_task
        except asyncio.CancelledError:
            pass
        self._heartbeat_task = None

    async def close(self) -> None:
        """Cancel subscriptions and take the current session offline."""

        await self.stop_heartbeat()
        await self.stream.close()
        await self.presence.close()
        await self.sessions.leave()

    async def _heartbeat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.heartbeat_interval_s)
                if not self.sessions.joined:
                    continue
                try:
                    await self.sessions.touch()
                except ChatError as exc:
                    self._record_error(exc)
        except asyncio.CancelledError:
            return

    async def _move_session(self, channel_id: str) -> PersistenceError | None:
        """Move the session; returns the offline failure for the old row, if any."""

        try:
            await self.sessions.move_to(channel_id)
        except PersistenceError as exc:
            if self.sessions.channel_id != channel_id:
                raise
            return exc
        return None

    async def _bind(self, channel_id: str) -> None:
        results = await asyncio.gather(
            self.stream.bind(channel_id),
            self.presence.bind(channel_id),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _record_error(self, exc: ChatError) -> None:
        logger.warning("background failure: %s", exc)
        self.last_error = exc
