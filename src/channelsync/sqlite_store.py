from __future__ import annotations

import sqlite3
from typing import Any, Callable, List, Mapping, Optional, Sequence

from .errors import PersistenceError
from .feed import ChangeFeed
from .models import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    MESSAGES,
    RECORD_TYPES,
    SESSIONS,
    ChangeEvent,
    Record,
    _now_ms,
    record_from_dict,
)
from .sqlite_backend import SQLiteBackend
from .store import Order, check_kind, check_order, prepare_insert, prepare_update


def _columns(kind: str) -> Sequence[str]:
    return tuple(RECORD_TYPES[kind].__dataclass_fields__)


def _row_to_record(kind: str, row: sqlite3.Row) -> Record:
    data = {name: row[name] for name in _columns(kind)}
    if kind == SESSIONS:
        data["is_online"] = bool(data["is_online"])
    return record_from_dict(kind, data)


class SQLiteStore:
    """Durable store backed by SQLite; publishes committed writes on its feed."""

    def __init__(
        self,
        backend: SQLiteBackend,
        feed: ChangeFeed | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._backend = backend
        self.feed = feed or ChangeFeed()
        self._now = now_func

    async def query(
        self,
        kind: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        return self.select(kind, filter, order, limit)

    def select(
        self,
        kind: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        check_kind(kind)
        check_order(kind, order)
        columns = _columns(kind)
        query = f"SELECT {', '.join(columns)} FROM {kind}"
        params: list[object] = []
        if filter:
            clauses = []
            for name, value in filter.items():
                if name not in columns:
                    return []
                clauses.append(f"{name}=?")
                params.append(int(value) if isinstance(value, bool) else value)
            query += " WHERE " + " AND ".join(clauses)
        if order is not None:
            direction = "DESC" if order.descending else "ASC"
            query += f" ORDER BY {order.field} {direction}, rowid {direction}"
        else:
            query += " ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(limit, 0))

        with self._backend.lock:
            rows = self._backend.connection.execute(query, params).fetchall()
        return [_row_to_record(kind, row) for row in rows]

    async def insert(self, kind: str, fields: Mapping[str, Any]) -> Record:
        row = prepare_insert(kind, fields, self._now())
        columns = _columns(kind)
        placeholders = ", ".join("?" for _ in columns)
        values = [int(row[name]) if isinstance(row[name], bool) else row[name] for name in columns]
        with self._backend.lock:
            try:
                self._backend.connection.execute(
                    f"INSERT INTO {kind} ({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                )
            except sqlite3.IntegrityError as exc:
                raise PersistenceError(f"{kind} insert rejected: {exc}") from exc
        record = record_from_dict(kind, row)
        self.feed.broadcast(ChangeEvent(kind=kind, type=EVENT_INSERT, record=record))
        return record

    async def update(self, kind: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        check_kind(kind)
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                current = cursor.execute(
                    f"SELECT {', '.join(_columns(kind))} FROM {kind} WHERE id=?", (record_id,)
                ).fetchone()
                if current is None:
                    conn.rollback()
                    raise PersistenceError(f"{kind} row {record_id} not found")
                old = _row_to_record(kind, current)
                row = prepare_update(kind, old.to_dict(), fields, self._now())
                changed = [name for name in _columns(kind) if name != "id"]
                values = [int(row[name]) if isinstance(row[name], bool) else row[name] for name in changed]
                cursor.execute(
                    f"UPDATE {kind} SET {', '.join(f'{name}=?' for name in changed)} WHERE id=?",
                    (*values, record_id),
                )
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise PersistenceError(f"{kind} update rejected: {exc}") from exc
            except PersistenceError:
                if conn.in_transaction:
                    conn.rollback()
                raise
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        record = record_from_dict(kind, row)
        self.feed.broadcast(ChangeEvent(kind=kind, type=EVENT_UPDATE, record=record, old_record=old))
        return record

    async def delete(self, kind: str, record_id: str) -> Record:
        check_kind(kind)
        with self._backend.lock:
            current = self._backend.connection.execute(
                f"SELECT {', '.join(_columns(kind))} FROM {kind} WHERE id=?", (record_id,)
            ).fetchone()
            if current is None:
                raise PersistenceError(f"{kind} row {record_id} not found")
            self._backend.connection.execute(f"DELETE FROM {kind} WHERE id=?", (record_id,))
        record = _row_to_record(kind, current)
        self.feed.broadcast(ChangeEvent(kind=kind, type=EVENT_DELETE, record=record, old_record=record))
        return record

    async def delete_messages_before(self, cutoff_ms: int) -> int:
        """Remove messages created before ``cutoff_ms`` and publish a delete per row."""

        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {', '.join(_columns(MESSAGES))} FROM messages WHERE created_at_ms < ? ORDER BY seq ASC",
                (cutoff_ms,),
            ).fetchall()
            if rows:
                self._backend.connection.execute("DELETE FROM messages WHERE created_at_ms < ?", (cutoff_ms,))
        for row in rows:
            record = _row_to_record(MESSAGES, row)
            self.feed.broadcast(ChangeEvent(kind=MESSAGES, type=EVENT_DELETE, record=record, old_record=record))
        return len(rows)
