from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .errors import SubscriptionError
from .models import EVENT_MASKS, KINDS, ChangeEvent, mask_accepts, matches_filter

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], None]
DropCallback = Callable[[Exception], None]


class _Registry(Protocol):
    def _register(self, subscription: "Subscription") -> None: ...

    def _unregister(self, subscription: "Subscription") -> None: ...


def _new_sub_id() -> str:
    return f"sub_{secrets.token_urlsafe(8)}"


@dataclass(eq=False)
class Subscription:
    """Handle for one filtered listener on a record kind.

    A handle delivers only between ``start()`` and ``cancel()``; events
    fanned out after cancellation are dropped even if the fan-out began
    earlier.
    """

    kind: str
    events: str
    filter: Dict[str, Any]
    callback: Callback
    registry: _Registry = field(repr=False)
    on_drop: Optional[DropCallback] = field(default=None, repr=False)
    sub_id: str = field(default_factory=_new_sub_id)
    active: bool = False

    def matches(self, event: ChangeEvent) -> bool:
        if event.kind != self.kind or not mask_accepts(self.events, event.type):
            return False
        if matches_filter(event.record, self.filter):
            return True
        return event.old_record is not None and matches_filter(event.old_record, self.filter)

    def deliver(self, event: ChangeEvent) -> None:
        if self.active and self.matches(event):
            self.callback(event)

    def start(self) -> "Subscription":
        if not self.active:
            self.registry._register(self)
            self.active = True
        return self

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.registry._unregister(self)

    def drop(self, exc: Exception) -> None:
        """Deactivate because the transport lost the subscription."""

        if not self.active:
            return
        self.cancel()
        if self.on_drop is not None:
            self.on_drop(exc)


def validate_subscription(kind: str, events: str) -> None:
    if kind not in KINDS:
        raise SubscriptionError(f"unknown record kind: {kind}")
    if events not in EVENT_MASKS:
        raise SubscriptionError(f"unsupported event mask: {events}")


class ChangeFeed:
    """Registers subscriptions and broadcasts store changes to matching listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    async def subscribe(
        self,
        kind: str,
        events: str,
        filter: Optional[Mapping[str, Any]],
        on_event: Callback,
        on_drop: Optional[DropCallback] = None,
    ) -> Subscription:
        return self.open(kind, events, filter, on_event, on_drop)

    def open(
        self,
        kind: str,
        events: str,
        filter: Optional[Mapping[str, Any]],
        on_event: Callback,
        on_drop: Optional[DropCallback] = None,
    ) -> Subscription:
        validate_subscription(kind, events)
        subscription = Subscription(
            kind=kind,
            events=events,
            filter=dict(filter or {}),
            callback=on_event,
            registry=self,
            on_drop=on_drop,
        )
        return subscription.start()

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.cancel()

    def _register(self, subscription: Subscription) -> None:
        self._subscriptions.setdefault(subscription.kind, []).append(subscription)

    def _unregister(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.kind)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.kind, None)

    def broadcast(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.kind, [])):
            subscription.deliver(event)

    def disconnect(self, exc: Exception | None = None) -> None:
        """Drop every live subscription, as a lost connection would."""

        reason = exc or SubscriptionError("change feed disconnected")
        dropped = [sub for subs in self._subscriptions.values() for sub in subs]
        if dropped:
            logger.info("dropping %d subscription(s): %s", len(dropped), reason)
        for subscription in dropped:
            subscription.drop(reason)

    def subscription_count(self, kind: str | None = None) -> int:
        if kind is not None:
            return len(self._subscriptions.get(kind, []))
        return sum(len(subs) for subs in self._subscriptions.values())
