from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Union

CHANNELS = "channels"
MESSAGES = "messages"
SESSIONS = "sessions"
KINDS = (CHANNELS, MESSAGES, SESSIONS)

VISIBILITY_PUBLIC = "public"
VISIBILITY_PRIVATE = "private"

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"
EVENT_TYPES = (EVENT_INSERT, EVENT_UPDATE, EVENT_DELETE)

EVENTS_INSERT = "insert"
EVENTS_ALL = "*"
EVENT_MASKS = (EVENTS_INSERT, EVENTS_ALL)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Channel:
    id: str
    name: str
    visibility: str
    created_at_ms: int
    updated_at_ms: int

    @property
    def is_private(self) -> bool:
        return self.visibility == VISIBILITY_PRIVATE

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Channel":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            visibility=str(data.get("visibility") or VISIBILITY_PUBLIC),
            created_at_ms=int(data["created_at_ms"]),
            updated_at_ms=int(data.get("updated_at_ms") or data["created_at_ms"]),
        )


@dataclass(frozen=True)
class Message:
    """A chat line. Messages are never edited once the store has assigned an id."""

    id: str
    channel_id: str
    author: str
    content: str
    created_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            channel_id=str(data["channel_id"]),
            author=str(data["author"]),
            content=str(data["content"]),
            created_at_ms=int(data["created_at_ms"]),
        )


@dataclass(frozen=True)
class Session:
    """One display name's presence in one channel."""

    id: str
    display_name: str
    channel_id: str
    is_online: bool
    last_seen_ms: int
    created_at_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Session":
        return cls(
            id=str(data["id"]),
            display_name=str(data["display_name"]),
            channel_id=str(data["channel_id"]),
            is_online=bool(data["is_online"]),
            last_seen_ms=int(data["last_seen_ms"]),
            created_at_ms=int(data["created_at_ms"]),
        )


Record = Union[Channel, Message, Session]

RECORD_TYPES = {
    CHANNELS: Channel,
    MESSAGES: Message,
    SESSIONS: Session,
}


def record_from_dict(kind: str, data: Mapping[str, Any]) -> Record:
    try:
        record_type = RECORD_TYPES[kind]
    except KeyError as exc:
        raise ValueError(f"unknown record kind: {kind}") from exc
    return record_type.from_dict(data)


@dataclass(frozen=True)
class ChangeEvent:
    """A row-level mutation published by a store.

    ``record`` is the row after the change; for deletes it is the removed
    row. ``old_record`` carries the previous row for updates and deletes.
    """

    kind: str
    type: str
    record: Record
    old_record: Optional[Record] = None

    def field(self, name: str) -> Any:
        return getattr(self.record, name, None)

    def touches(self, name: str, value: Any) -> bool:
        """Return True when either the new or the old row has ``name == value``."""

        if getattr(self.record, name, None) == value:
            return True
        return self.old_record is not None and getattr(self.old_record, name, None) == value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "type": self.type,
            "record": self.record.to_dict(),
            "old_record": self.old_record.to_dict() if self.old_record is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeEvent":
        kind = str(data["kind"])
        old = data.get("old_record")
        return cls(
            kind=kind,
            type=str(data["type"]),
            record=record_from_dict(kind, data["record"]),
            old_record=record_from_dict(kind, old) if old else None,
        )


def mask_accepts(events: str, event_type: str) -> bool:
    return events == EVENTS_ALL or events == event_type


def matches_filter(record: Record, filter: Optional[Mapping[str, Any]]) -> bool:
    if not filter:
        return True
    for name, value in filter.items():
        if getattr(record, name, None) != value:
            return False
    return True
