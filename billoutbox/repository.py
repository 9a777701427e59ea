"""SQLite-backed storage for outbox events."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from .types import Event, EventData, OutboxError, Repository, Status

_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_events (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    event_data TEXT NOT NULL,
    aggregate_id TEXT,
    aggregate_type TEXT,
    occurred_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    next_retry_at TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_outbox_events_status ON outbox_events(status);
CREATE INDEX IF NOT EXISTS idx_outbox_events_next_retry
    ON outbox_events(next_retry_at) WHERE next_retry_at IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_outbox_events_aggregate
    ON outbox_events(aggregate_type, aggregate_id);
CREATE INDEX IF NOT EXISTS idx_outbox_events_occurred_at ON outbox_events(occurred_at);
"""

_SELECT = """
SELECT id, event_type, event_data, aggregate_id, aggregate_type,
       occurred_at, status, retry_count, max_retries, next_retry_at,
       error_message, created_at, updated_at, version
FROM outbox_events
"""


class RepositoryError(OutboxError):
    """Raised when the event store cannot complete an operation."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db_time(moment: datetime) -> str:
    # A fixed-width UTC form keeps string comparison in SQL chronological.
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db_time(text: str) -> datetime:
    return datetime.fromisoformat(text)


class SqlRepository(Repository):
    """Outbox repository stored in the ``outbox_events`` table of a SQLite database."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection
        self._lock = threading.RLock()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._connection:
                    yield self._connection
            except sqlite3.Error as exc:
                raise RepositoryError(f"failed to {action}: {exc}") from exc

    def create_schema(self) -> None:
        """Create the outbox table and its indexes if they are missing."""
        with self._lock:
            try:
                self._connection.executescript(_SCHEMA)
            except sqlite3.Error as exc:
                raise RepositoryError(f"failed to create outbox table: {exc}") from exc

    def store(self, event: Event) -> None:
        params = (
            str(event.id),
            event.event_type,
            event.event_data,
            event.aggregate_id,
            event.aggregate_type,
            _to_db_time(event.occurred_at),
            Status(event.status).value,
            event.retry_count,
            event.max_retries,
            None if event.next_retry_at is None else _to_db_time(event.next_retry_at),
            event.error_message,
            _to_db_time(event.created_at),
            _to_db_time(event.updated_at),
            event.version,
        )
        with self._transaction("store outbox event") as conn:
            conn.execute(
                "INSERT INTO outbox_events (id, event_type, event_data, aggregate_id,"
                " aggregate_type, occurred_at, status, retry_count, max_retries,"
                " next_retry_at, error_message, created_at, updated_at, version)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )

    def get_pending_events(self, limit: int) -> list[Event]:
        with self._transaction("get pending events") as conn:
            rows = conn.execute(
                _SELECT + " WHERE status = ? OR (status = ? AND next_retry_at <= ?)"
                " ORDER BY occurred_at ASC LIMIT ?",
                (Status.PENDING.value, Status.FAILED.value, _to_db_time(_now()), limit),
            ).fetchall()
        return [self._scan(row) for row in rows]

    def get_by_id(self, event_id: uuid.UUID) -> Event:
        with self._transaction("get event") as conn:
            row = conn.execute(_SELECT + " WHERE id = ?", (str(event_id),)).fetchone()
        if row is None:
            raise RepositoryError("failed to scan event: no rows in result set")
        return self._scan(row)

    def update_status(
        self, event_id: uuid.UUID, status: Status, error_message: str | None = None
    ) -> None:
        with self._transaction("update event status") as conn:
            conn.execute(
                "UPDATE outbox_events SET status = ?, error_message = ?, updated_at = ?"
                " WHERE id = ?",
                (Status(status).value, error_message, _to_db_time(_now()), str(event_id)),
            )

    def mark_as_processing(self, event_id: uuid.UUID) -> None:
        with self._transaction("mark event as processing") as conn:
            cursor = conn.execute(
                "UPDATE outbox_events SET status = ?, updated_at = ?"
                " WHERE id = ? AND status = ?",
                (
                    Status.PROCESSING.value,
                    _to_db_time(_now()),
                    str(event_id),
                    Status.PENDING.value,
                ),
            )
            if cursor.rowcount == 0:
                raise RepositoryError("event not found or not in pending status")

    def increment_retry_count(
        self, event_id: uuid.UUID, next_retry_at: datetime, error_message: str | None = None
    ) -> None:
        with self._transaction("increment retry count") as conn:
            conn.execute(
                "UPDATE outbox_events SET retry_count = retry_count + 1,"
                " next_retry_at = ?, status = ?, error_message = ?, updated_at = ?"
                " WHERE id = ?",
                (
                    _to_db_time(next_retry_at),
                    Status.FAILED.value,
                    error_message,
                    _to_db_time(_now()),
                    str(event_id),
                ),
            )

    def delete_completed_events(self, older_than: datetime) -> int:
        with self._transaction("delete completed events") as conn:
            cursor = conn.execute(
                "DELETE FROM outbox_events WHERE status = ? AND updated_at < ?",
                (Status.COMPLETED.value, _to_db_time(older_than)),
            )
            return cursor.rowcount

    @staticmethod
    def _scan(row: tuple[Any, ...]) -> Event:
        try:
            return Event(
                id=uuid.UUID(row[0]),
                event_type=row[1],
                event_data=row[2],
                aggregate_id=row[3],
                aggregate_type=row[4],
                occurred_at=_from_db_time(row[5]),
                status=Status(row[6]),
                retry_count=int(row[7]),
                max_retries=int(row[8]),
                next_retry_at=None if row[9] is None else _from_db_time(row[9]),
                error_message=row[10],
                created_at=_from_db_time(row[11]),
                updated_at=_from_db_time(row[12]),
                version=int(row[13]),
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise RepositoryError(f"failed to scan event: {exc}") from exc


def new_event(
    event_type: str,
    data: Any,
    aggregate_id: str | None = None,
    aggregate_type: str | None = None,
) -> Event:
    """Build a pending event whose payload wraps ``data`` in an envelope."""
    now = _now()
    payload = EventData(
        type=event_type, data=data, timestamp=now, id=str(uuid.uuid4())
    ).to_json()
    return Event(
        id=uuid.uuid4(),
        event_type=event_type,
        event_data=payload,
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        occurred_at=now,
        status=Status.PENDING,
        retry_count=0,
        max_retries=3,
        created_at=now,
        updated_at=now,
        version=1,
    )