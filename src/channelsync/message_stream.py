from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, replace
from typing import List, Tuple

from .config import ClientConfig
from .errors import ChatError, LoadError, PersistenceError, SubscriptionError, ValidationError
from .lifecycle import ChannelBinding, ErrorSink
from .models import EVENT_INSERT, EVENTS_INSERT, MESSAGES, ChangeEvent, Message
from .retry import bounded
from .session_manager import SessionManager
from .store import Order, Store

logger = logging.getLogger(__name__)

PHASE_UNLOADED = "unloaded"
PHASE_LOADING = "loading"
PHASE_LIVE = "live"


@dataclass(frozen=True)
class MessageState:
    channel_id: str | None = None
    phase: str = PHASE_UNLOADED
    messages: Tuple[Message, ...] = ()
    stale: bool = False


def merge_message(messages: Tuple[Message, ...], message: Message) -> Tuple[Message, ...]:
    """Insert ``message`` by creation time, keeping store order for equal timestamps.

    Returns ``messages`` itself when the id is already present.
    """

    if any(existing.id == message.id for existing in messages):
        return messages
    if not messages or messages[-1].created_at_ms <= message.created_at_ms:
        return messages + (message,)
    index = bisect.bisect_right([existing.created_at_ms for existing in messages], message.created_at_ms)
    return messages[:index] + (message,) + messages[index:]


def apply_message_event(state: MessageState, event: ChangeEvent) -> MessageState:
    if event.kind != MESSAGES or event.type != EVENT_INSERT:
        return state
    message = event.record
    if state.channel_id is None or message.channel_id != state.channel_id:
        return state
    merged = merge_message(state.messages, message)
    if merged is state.messages:
        return state
    return replace(state, messages=merged)


class MessageStream(ChannelBinding):
    """Backlog plus live inserts for the selected channel.

    The subscription opens before the backlog is fetched; inserts that
    arrive in between are buffered and merged once the backlog lands, so
    nothing written during the load is lost and nothing is shown twice.
    """

    kind = MESSAGES
    events = EVENTS_INSERT
    label = "message stream"

    def __init__(
        self,
        store: Store,
        feed,
        sessions: SessionManager,
        config: ClientConfig | None = None,
        *,
        on_error: ErrorSink | None = None,
    ) -> None:
        super().__init__(feed, config, on_error=on_error)
        self._store = store
        self._sessions = sessions
        self._state = MessageState()

    @property
    def state(self) -> MessageState:
        return self._state

    @property
    def messages(self) -> List[Message]:
        return list(self._state.messages)

    def apply(self, event: ChangeEvent) -> MessageState:
        self._state = apply_message_event(self._state, event)
        return self._state

    async def fetch_backlog(self, channel_id: str) -> List[Message]:
        """Return the most recent ``backlog_limit`` messages, oldest first."""

        newest_first = await bounded(
            lambda: self._store.query(
                MESSAGES,
                {"channel_id": channel_id},
                Order("created_at_ms", descending=True),
                self.config.backlog_limit,
            ),
            what=f"backlog load for {channel_id}",
            attempts=self.config.load_attempts,
            timeout_s=self.config.load_timeout_s,
            delay_s=self.config.retry_delay_s,
        )
        return list(reversed(newest_first))

    async def bind(self, channel_id: str) -> MessageState:
        generation = self._begin(channel_id)
        await self._teardown()
        if not self._is_current(generation, channel_id):
            return self._state

        same_channel = self._state.channel_id == channel_id
        self._state = MessageState(
            channel_id=channel_id,
            phase=PHASE_LOADING,
            messages=self._state.messages if same_channel else (),
            stale=self._state.stale if same_channel else False,
        )
        buffered: List[ChangeEvent] = []

        def on_event(event: ChangeEvent) -> None:
            if self._state.phase == PHASE_LIVE:
                self.apply(event)
            else:
                buffered.append(event)

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
            backlog = await self.fetch_backlog(channel_id)
        except LoadError:
            if not self._is_current(generation, channel_id):
                return self._state
            await self._teardown()
            self._state = replace(self._state, stale=True)
            raise

        if not self._is_current(generation, channel_id):
            logger.debug("discarding backlog for %s; selection moved on", channel_id)
            return self._state

        state = MessageState(channel_id=channel_id, phase=PHASE_LIVE, messages=tuple(backlog))
        for event in buffered:
            state = apply_message_event(state, event)
        self._state = state
        return state

    async def reload(self) -> MessageState:
        if self._channel_id is None:
            raise ValidationError("no channel selected")
        return await self.bind(self._channel_id)

    def validate_content(self, content: str) -> str:
        if not isinstance(content, str):
            raise ValidationError("message must be text")
        clean = content.strip()
        if not clean:
            raise ValidationError("message is empty")
        if len(clean) > self.config.max_message_length:
            raise ValidationError(f"message must be at most {self.config.max_message_length} characters")
        return clean

    async def send(self, content: str) -> Message:
        """Persist a message from the current session into the bound channel.

        The message is not appended here; it shows up when the store's
        insert event comes back through the subscription.
        """

        clean = self.validate_content(content)
        session = self._sessions.session
        if session is None:
            raise ValidationError("join with a codename first")
        channel_id = self._channel_id
        if channel_id is None:
            raise ValidationError("no channel selected")
        try:
            return await self._store.insert(
                MESSAGES,
                {"channel_id": channel_id, "author": session.display_name, "content": clean},
            )
        except ChatError:
            raise
        except Exception as exc:
            raise PersistenceError(f"message not sent: {exc}") from exc

    def _mark_stale(self) -> None:
        self._state = replace(self._state, stale=True)

    def _reset(self) -> None:
        self._state = MessageState()
