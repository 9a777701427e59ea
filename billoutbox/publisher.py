"""Publishers that deliver outbox events to their destinations."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

from .types import (
    Event,
    EventData,
    OutboxError,
    Publisher,
    _format_timestamp,
    _json_default,
)

logger = logging.getLogger(__name__)


class PublishError(OutboxError):
    """Raised when an event could not be delivered."""


class HTTPClient(ABC):
    """Minimal client able to POST a body and report the status code."""

    @abstractmethod
    def post(self, url: str, content_type: str, body: bytes) -> int:
        """Send the body and return the HTTP status code."""


class LoggingHTTPClient(HTTPClient):
    """Client that records and logs requests instead of sending them."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, str, bytes]] = []

    def post(self, url: str, content_type: str, body: bytes) -> int:
        self.requests.append((url, content_type, body))
        logger.info(
            "Would send POST to %s with content-type %s and body: %s",
            url,
            content_type,
            body.decode("utf-8", errors="replace"),
        )
        return 200


def _decode(event: Event) -> EventData:
    try:
        return EventData.from_json(event.event_data)
    except OutboxError as exc:
        raise PublishError(f"failed to unmarshal event data: {exc}") from exc


class HTTPPublisher(Publisher):
    """Publishes events as JSON documents POSTed to an endpoint."""

    def __init__(self, endpoint: str, client: HTTPClient | None = None) -> None:
        self.endpoint = endpoint
        self.client = client if client is not None else LoggingHTTPClient()

    def publish(self, event: Event) -> None:
        event_data = _decode(event)
        payload = {
            "id": str(event.id),
            "type": event.event_type,
            "data": event_data.data,
            "occurred_at": _format_timestamp(event.occurred_at),
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "version": event.version,
        }
        try:
            body = json.dumps(
                payload,
                default=_json_default,
                sort_keys=True,
                separators=(",", ":"),
                allow_nan=False,
            ).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise PublishError(f"failed to marshal payload: {exc}") from exc

        try:
            status_code = self.client.post(self.endpoint, "application/json", body)
        except Exception as exc:
            raise PublishError(f"HTTP request failed: {exc}") from exc

        if status_code >= 400:
            raise PublishError(f"HTTP request failed with status code: {status_code}")


class ConsolePublisher(Publisher):
    """Publishes events to the log, for development and testing."""

    def publish(self, event: Event) -> None:
        event_data = _decode(event)
        logger.info(
            "Publishing event: ID=%s, Type=%s, Data=%r, AggregateID=%s, AggregateType=%s",
            event.id,
            event.event_type,
            event_data.data,
            event.aggregate_id or "",
            event.aggregate_type or "",
        )


class MultiPublisher(Publisher):
    """Publishes to every wrapped publisher, reporting the last failure."""

    def __init__(self, *publishers: Publisher) -> None:
        self.publishers = list(publishers)

    def publish(self, event: Event) -> None:
        last_error: PublishError | None = None
        for index, publisher in enumerate(self.publishers):
            try:
                publisher.publish(event)
            except Exception as exc:
                logger.warning("Publisher %d failed: %s", index, exc)
                last_error = PublishError(f"publisher {index} failed: {exc}")
                last_error.__cause__ = exc
        if last_error is not None:
            raise last_error