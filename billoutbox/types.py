"""Core outbox data types: events, statuses and the publisher/repository interfaces."""

from __future__ import annotations

import dataclasses
import json
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class OutboxError(Exception):
    """Base class for every outbox failure."""


class ProcessingTimeoutError(OutboxError):
    """Raised when publishing an event takes longer than allowed."""

    def __init__(self, message: str = "processing timeout") -> None:
        super().__init__(message)


class Status(str, Enum):
    """Lifecycle state of an outbox event."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_TIMESTAMP_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$",
    re.IGNORECASE,
)


def _format_timestamp(moment: datetime) -> str:
    """Format a datetime as RFC 3339 with trimmed fractional seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.strftime("%Y-%m-%dT%H:%M:%S")
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    if not moment.utcoffset():
        return text + "Z"
    return text + moment.isoformat()[-6:]


def _parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp, accepting up to nanosecond precision."""
    match = _TIMESTAMP_RE.match(text.strip())
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    base, fraction, zone = match.groups()
    if fraction:
        base += "." + fraction[:6].ljust(6, "0")
    if zone is None or zone.upper() == "Z":
        zone = "+00:00"
    return datetime.fromisoformat(base + zone)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _format_timestamp(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _optional_str(document: dict, key: str) -> str:
    value = document.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise OutboxError(f"event data field {key!r} must be a string")
    return value


@dataclass
class EventData:
    """The JSON envelope stored as an event's payload."""

    type: str = ""
    data: Any = None
    timestamp: datetime | None = None
    id: str = ""

    @classmethod
    def from_json(cls, raw: str | bytes) -> EventData:
        """Decode an envelope; missing fields keep their empty values."""
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise OutboxError(f"invalid event data: {exc}") from exc
        if not isinstance(decoded, dict):
            raise OutboxError("event data must be a JSON object")
        stamp = decoded.get("timestamp")
        if stamp is None:
            timestamp = None
        elif isinstance(stamp, str):
            try:
                timestamp = _parse_timestamp(stamp)
            except ValueError as exc:
                raise OutboxError(f"invalid event timestamp: {exc}") from exc
        else:
            raise OutboxError("event data field 'timestamp' must be a string")
        return cls(
            type=_optional_str(decoded, "type"),
            data=decoded.get("data"),
            timestamp=timestamp,
            id=_optional_str(decoded, "id"),
        )

    def to_json(self) -> str:
        """Encode the envelope as compact JSON."""
        payload = {
            "type": self.type,
            "data": self.data,
            "timestamp": None if self.timestamp is None else _format_timestamp(self.timestamp),
            "id": self.id,
        }
        try:
            return json.dumps(
                payload, default=_json_default, separators=(",", ":"), allow_nan=False
            )
        except (TypeError, ValueError) as exc:
            raise OutboxError(f"failed to marshal event data: {exc}") from exc


@dataclass
class Event:
    """A row of the outbox: one event awaiting or past delivery."""

    id: uuid.UUID
    event_type: str
    event_data: str
    aggregate_id: str | None = None
    aggregate_type: str | None = None
    occurred_at: datetime = field(default_factory=_utcnow)
    status: Status = Status.PENDING
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    version: int = 1


class Publisher(ABC):
    """Delivers an event to its destination."""

    @abstractmethod
    def publish(self, event: Event) -> None:
        """Deliver the event, raising on failure."""


class Repository(ABC):
    """Persistent storage for outbox events."""

    @abstractmethod
    def store(self, event: Event) -> None:
        """Insert a new event."""

    @abstractmethod
    def get_pending_events(self, limit: int) -> list[Event]:
        """Return events ready for delivery, oldest first."""

    @abstractmethod
    def get_by_id(self, event_id: uuid.UUID) -> Event:
        """Return the event with the given id."""

    @abstractmethod
    def update_status(
        self, event_id: uuid.UUID, status: Status, error_message: str | None = None
    ) -> None:
        """Set an event's status and error message."""

    @abstractmethod
    def mark_as_processing(self, event_id: uuid.UUID) -> None:
        """Claim a pending event for processing."""

    @abstractmethod
    def increment_retry_count(
        self, event_id: uuid.UUID, next_retry_at: datetime, error_message: str | None = None
    ) -> None:
        """Record a failed attempt and schedule the next one."""

    @abstractmethod
    def delete_completed_events(self, older_than: datetime) -> int:
        """Delete completed events last updated before the cutoff."""