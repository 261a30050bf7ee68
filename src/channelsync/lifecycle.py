"""Subscription lifecycle shared by the channel-scoped components.

Every bind to a channel gets a generation number. Results and events are
applied only while both the generation and the channel still match, so a
slow completion from an earlier bind can never overwrite the state of the
channel selected after it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .config import ClientConfig
from .errors import ChatError, SubscriptionError
from .feed import Callback, Subscription
from .models import ChangeEvent
from .retry import bounded

logger = logging.getLogger(__name__)

ErrorSink = Callable[[ChatError], None]


class ChannelBinding:
    kind: str = ""
    events: str = ""
    label: str = "component"

    def __init__(self, feed, config: ClientConfig | None = None, *, on_error: ErrorSink | None = None) -> None:
        self._feed = feed
        self.config = config or ClientConfig()
        self._on_error = on_error
        self._generation = 0
        self._channel_id: str | None = None
        self._subscription: Subscription | None = None
        self._resubscribe_task: asyncio.Task | None = None

    @property
    def channel_id(self) -> str | None:
        return self._channel_id

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def bind(self, channel_id: str):
        raise NotImplementedError

    def _reset(self) -> None:
        raise NotImplementedError

    def _mark_stale(self) -> None:
        raise NotImplementedError

    def _begin(self, channel_id: str) -> int:
        self._generation += 1
        self._channel_id = channel_id
        return self._generation

    def _is_current(self, generation: int, channel_id: str) -> bool:
        return generation == self._generation and channel_id == self._channel_id

    async def _open(self, channel_id: str, generation: int, on_event: Callback) -> Optional[Subscription]:
        """Subscribe to the channel; returns None when the bind was superseded meanwhile."""

        def deliver(event: ChangeEvent) -> None:
            if self._is_current(generation, channel_id):
                on_event(event)

        def dropped(exc: Exception) -> None:
            self._handle_drop(channel_id, generation, exc)

        subscription = await bounded(
            lambda: self._feed.subscribe(self.kind, self.events, {"channel_id": channel_id}, deliver, dropped),
            what=f"{self.label} subscribe to {channel_id}",
            attempts=self.config.load_attempts,
            timeout_s=self.config.load_timeout_s,
            delay_s=self.config.retry_delay_s,
            error=SubscriptionError,
        )
        if not self._is_current(generation, channel_id):
            await self._release(subscription)
            return None
        self._subscription = subscription
        return subscription

    async def _teardown(self) -> None:
        task = self._resubscribe_task
        self._resubscribe_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self._release(subscription)

    async def _release(self, subscription: Subscription) -> None:
        # Local cancel stops delivery immediately; the transport call only
        # frees the server side.
        subscription.cancel()
        try:
            await self._feed.unsubscribe(subscription)
        except Exception as exc:
            logger.warning("%s: unsubscribe %s failed: %s", self.label, subscription.sub_id, exc)

    def _handle_drop(self, channel_id: str, generation: int, exc: Exception) -> None:
        if not self._is_current(generation, channel_id):
            return
        self._subscription = None
        self._mark_stale()
        logger.warning("%s lost its subscription to %s: %s", self.label, channel_id, exc)
        self._resubscribe_task = asyncio.ensure_future(self._resubscribe(channel_id, generation))

    async def _resubscribe(self, channel_id: str, generation: int) -> None:
        await asyncio.sleep(self.config.retry_delay_s)
        if not self._is_current(generation, channel_id):
            return
        try:
            await self.bind(channel_id)
        except ChatError as exc:
            if not isinstance(exc, SubscriptionError):
                exc = SubscriptionError(f"{self.label} could not resubscribe to {channel_id}: {exc}")
            self._report(exc)
        else:
            logger.info("%s resubscribed to %s", self.label, channel_id)

    def _report(self, exc: ChatError) -> None:
        logger.warning("%s: %s", self.label, exc)
        if self._on_error is not None:
            self._on_error(exc)

    async def close(self) -> None:
        self._generation += 1
        self._channel_id = None
        await self._teardown()
        self._reset()
