"""Store boundary and the in-memory store used by tests and simulations."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from .errors import PersistenceError
from .feed import ChangeFeed
from .models import (
    CHANNELS,
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    KINDS,
    MESSAGES,
    RECORD_TYPES,
    SESSIONS,
    VISIBILITY_PRIVATE,
    VISIBILITY_PUBLIC,
    ChangeEvent,
    Record,
    _now_ms,
    matches_filter,
    record_from_dict,
)

ID_PREFIXES = {CHANNELS: "ch", MESSAGES: "msg", SESSIONS: "ses"}

DEFAULT_CHANNELS = (
    ("general", VISIBILITY_PUBLIC),
    ("operations", VISIBILITY_PRIVATE),
    ("intel-reports", VISIBILITY_PUBLIC),
    ("classified", VISIBILITY_PRIVATE),
)

# Columns a caller may change after insert. Messages are immutable.
UPDATABLE_FIELDS = {
    CHANNELS: {"name", "visibility"},
    MESSAGES: set(),
    SESSIONS: {"is_online", "last_seen_ms"},
}


@dataclass(frozen=True)
class Order:
    field: str
    descending: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "descending": self.descending}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Optional["Order"]:
        if not data:
            return None
        return cls(field=str(data["field"]), descending=bool(data.get("descending", False)))


class Store(Protocol):
    async def query(
        self,
        kind: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Record]: ...

    async def insert(self, kind: str, fields: Mapping[str, Any]) -> Record: ...

    async def update(self, kind: str, record_id: str, fields: Mapping[str, Any]) -> Record: ...


def new_record_id(kind: str) -> str:
    return f"{ID_PREFIXES[kind]}_{secrets.token_urlsafe(12)}"


def check_kind(kind: str) -> None:
    if kind not in KINDS:
        raise ValueError(f"unknown record kind: {kind}")


def check_order(kind: str, order: Optional[Order]) -> None:
    if order is None:
        return
    if order.field not in RECORD_TYPES[kind].__dataclass_fields__:
        raise ValueError(f"cannot order {kind} by {order.field}")


def _required_text(fields: Mapping[str, Any], name: str) -> str:
    value = fields.get(name)
    if not isinstance(value, str) or not value.strip():
        raise PersistenceError(f"{name} is required")
    return value


def prepare_insert(kind: str, fields: Mapping[str, Any], now_ms: int) -> Dict[str, Any]:
    """Validate insert fields and return the complete row with identity and timestamps."""

    check_kind(kind)
    row: Dict[str, Any] = {"id": new_record_id(kind), "created_at_ms": now_ms}
    if kind == CHANNELS:
        visibility = fields.get("visibility", VISIBILITY_PUBLIC)
        if visibility not in {VISIBILITY_PUBLIC, VISIBILITY_PRIVATE}:
            raise PersistenceError(f"invalid visibility: {visibility!r}")
        row.update(name=_required_text(fields, "name"), visibility=visibility, updated_at_ms=now_ms)
    elif kind == MESSAGES:
        row.update(
            channel_id=_required_text(fields, "channel_id"),
            author=_required_text(fields, "author"),
            content=_required_text(fields, "content"),
        )
    else:
        is_online = fields.get("is_online", True)
        if not isinstance(is_online, bool):
            raise PersistenceError("is_online must be a boolean")
        row.update(
            display_name=_required_text(fields, "display_name"),
            channel_id=_required_text(fields, "channel_id"),
            is_online=is_online,
            last_seen_ms=now_ms,
        )
    return row


def prepare_update(kind: str, current: Mapping[str, Any], fields: Mapping[str, Any], now_ms: int) -> Dict[str, Any]:
    check_kind(kind)
    allowed = UPDATABLE_FIELDS[kind]
    rejected = set(fields) - allowed
    if rejected:
        raise PersistenceError(f"cannot update {kind} fields: {', '.join(sorted(rejected))}")
    row = dict(current)
    row.update(fields)
    if kind == SESSIONS and not isinstance(row["is_online"], bool):
        raise PersistenceError("is_online must be a boolean")
    if kind == CHANNELS:
        row["updated_at_ms"] = now_ms
    return row


async def seed_channels(store: Store, channels=DEFAULT_CHANNELS) -> List[Record]:
    """Create any of ``channels`` that do not exist yet; returns the created rows."""

    existing = {channel.name for channel in await store.query(CHANNELS)}
    created = []
    for name, visibility in channels:
        if name in existing:
            continue
        created.append(await store.insert(CHANNELS, {"name": name, "visibility": visibility}))
    return created


class InMemoryStore:
    """Dict-backed store that publishes every write on its change feed."""

    def __init__(self, feed: ChangeFeed | None = None, *, now_func: Callable[[], int] = _now_ms) -> None:
        self.feed = feed or ChangeFeed()
        self._now = now_func
        self._rows: Dict[str, Dict[str, Dict[str, Any]]] = {kind: {} for kind in KINDS}
        self._positions: Dict[str, int] = {}
        self._next_position = 0

    async def query(
        self,
        kind: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        check_kind(kind)
        check_order(kind, order)
        records = [record_from_dict(kind, row) for row in self._rows[kind].values()]
        records = [record for record in records if matches_filter(record, filter)]
        if order is not None:
            records.sort(
                key=lambda record: (getattr(record, order.field), self._positions[record.id]),
                reverse=order.descending,
            )
        if limit is not None:
            records = records[: max(limit, 0)]
        return records

    async def insert(self, kind: str, fields: Mapping[str, Any]) -> Record:
        row = prepare_insert(kind, fields, self._now())
        self._check_constraints(kind, row)
        self._rows[kind][row["id"]] = row
        self._positions[row["id"]] = self._next_position
        self._next_position += 1
        record = record_from_dict(kind, row)
        self.feed.broadcast(ChangeEvent(kind=kind, type=EVENT_INSERT, record=record))
        return record

    async def update(self, kind: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        check_kind(kind)
        current = self._rows[kind].get(record_id)
        if current is None:
            raise PersistenceError(f"{kind} row {record_id} not found")
        row = prepare_update(kind, current, fields, self._now())
        if kind == CHANNELS:
            self._check_constraints(kind, row)
        self._rows[kind][record_id] = row
        record = record_from_dict(kind, row)
        old = record_from_dict(kind, current)
        self.feed.broadcast(ChangeEvent(kind=kind, type=EVENT_UPDATE, record=record, old_record=old))
        return record

    async def delete(self, kind: str, record_id: str) -> Record:
        check_kind(kind)
        row = self._rows[kind].pop(record_id, None)
        if row is None:
            raise PersistenceError(f"{kind} row {record_id} not found")
        self._positions.pop(record_id, None)
        record = record_from_dict(kind, row)
        self.feed.broadcast(ChangeEvent(kind=kind, type=EVENT_DELETE, record=record, old_record=record))
        return record

    async def delete_messages_before(self, cutoff_ms: int) -> int:
        expired = [row["id"] for row in self._rows[MESSAGES].values() if row["created_at_ms"] < cutoff_ms]
        for record_id in expired:
            await self.delete(MESSAGES, record_id)
        return len(expired)

    def _check_constraints(self, kind: str, row: Mapping[str, Any]) -> None:
        if kind == CHANNELS:
            for other in self._rows[CHANNELS].values():
                if other["name"] == row["name"] and other["id"] != row["id"]:
                    raise PersistenceError(f"channel name already exists: {row['name']}")
        elif row["channel_id"] not in self._rows[CHANNELS]:
            raise PersistenceError(f"unknown channel: {row['channel_id']}")
