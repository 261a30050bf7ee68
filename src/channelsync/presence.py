from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import List, Set, Tuple

from .config import ClientConfig
from .errors import ChatError, LoadError, SubscriptionError
from .lifecycle import ChannelBinding, ErrorSink
from .models import EVENTS_ALL, SESSIONS, ChangeEvent, Session
from .retry import bounded
from .store import Order, Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RosterState:
    channel_id: str | None = None
    sessions: Tuple[Session, ...] = ()
    loaded: bool = False
    stale: bool = False
    pending_reloads: int = 0


def apply_presence_event(state: RosterState, event: ChangeEvent) -> RosterState:
    """Count a roster-affecting event; the roster itself is only ever replaced by a reload.

    Joins, leaves and online flips can arrive as inserts, updates or
    deletes, and an update may move a row into or out of the channel, so
    either the new or the old row matching the channel counts.
    """

    if state.channel_id is None or event.kind != SESSIONS:
        return state
    if not event.touches("channel_id", state.channel_id):
        return state
    return replace(state, pending_reloads=state.pending_reloads + 1)


class PresenceTracker(ChannelBinding):
    """Online roster of the selected channel, reloaded in full on every session change."""

    kind = SESSIONS
    events = EVENTS_ALL
    label = "presence tracker"

    def __init__(
        self,
        store: Store,
        feed,
        config: ClientConfig | None = None,
        *,
        on_error: ErrorSink | None = None,
    ) -> None:
        super().__init__(feed, config, on_error=on_error)
        self._store = store
        self._state = RosterState()
        self._issued = 0
        self._applied = 0
        self._reloads: Set[asyncio.Task] = set()

    @property
    def state(self) -> RosterState:
        return self._state

    @property
    def online(self) -> List[Session]:
        return list(self._state.sessions)

    async def load_roster(self, channel_id: str) -> List[Session]:
        return await bounded(
            lambda: self._store.query(
                SESSIONS,
                {"channel_id": channel_id, "is_online": True},
                Order("display_name"),
            ),
            what=f"roster load for {channel_id}",
            attempts=self.config.load_attempts,
            timeout_s=self.config.load_timeout_s,
            delay_s=self.config.retry_delay_s,
        )

    async def bind(self, channel_id: str) -> RosterState:
        generation = self._begin(channel_id)
        await self._teardown()
        if not self._is_current(generation, channel_id):
            return self._state

        same_channel = self._state.channel_id == channel_id
        self._state = RosterState(
            channel_id=channel_id,
            sessions=self._state.sessions if same_channel else (),
            loaded=self._state.loaded if same_channel else False,
            stale=self._state.stale if same_channel else False,
        )
        self._issued = 0
        self._applied = 0

        def on_event(event: ChangeEvent) -> None:
            state = apply_presence_event(self._state, event)
            if state is self._state:
                return
            self._state = state
            task = asyncio.ensure_future(self._background_reload(channel_id, generation))
            self._reloads.add(task)
            task.add_done_callback(self._reloads.discard)

        try:
            subscription = await self._open(channel_id, generation, on_event)
        except SubscriptionError:
            if not self._is_current(generation, channel_id):
                return self._state
            self._state = replace(self._state, stale=True)
            raise
        if subscription is None:
            return self._state

        try:
            await self._reload(channel_id, generation)
        except LoadError:
            if self._is_current(generation, channel_id):
                await self._teardown()
                self._state = replace(self._state, stale=True)
                raise
        return self._state

    async def refresh(self) -> RosterState:
        channel_id = self._channel_id
        if channel_id is None:
            return self._state
        await self._reload(channel_id, self._generation)
        return self._state

    async def drain(self) -> None:
        """Wait until every event-triggered reload has finished."""

        while self._reloads:
            await asyncio.gather(*list(self._reloads), return_exceptions=True)

    async def _reload(self, channel_id: str, generation: int) -> bool:
        self._issued += 1
        ticket = self._issued
        sessions = await self.load_roster(channel_id)
        if not self._is_current(generation, channel_id):
            logger.debug("discarding roster for %s; selection moved on", channel_id)
            return False
        if ticket < self._applied:
            logger.debug("discarding roster reload %d for %s; %d already applied", ticket, channel_id, self._applied)
            return False
        self._applied = ticket
        self._state = replace(self._state, sessions=tuple(sessions), loaded=True, stale=False)
        return True

    async def _background_reload(self, channel_id: str, generation: int) -> None:
        try:
            await self._reload(channel_id, generation)
        except ChatError as exc:
            if self._is_current(generation, channel_id):
                self._state = replace(self._state, stale=True)
                self._report(exc)
        finally:
            if self._is_current(generation, channel_id):
                self._state = replace(self._state, pending_reloads=max(0, self._state.pending_reloads - 1))

    def _mark_stale(self) -> None:
        self._state = replace(self._state, stale=True)

    def _reset(self) -> None:
        for task in list(self._reloads):
            task.cancel()
        self._reloads.clear()
        self._state = RosterState()
