"""Outbox service: stores events and runs the dispatcher that delivers them."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .dispatcher import DispatcherConfig, OutboxDispatcher
from .publisher import ConsolePublisher, HTTPPublisher, LoggingHTTPClient, MultiPublisher
from .repository import SqlRepository, new_event
from .types import Event, OutboxError, Publisher

logger = logging.getLogger(__name__)


@dataclass
class ServiceConfig:
    """Service settings; publisher_type is "console", "http" or "multi"."""

    dispatcher_config: DispatcherConfig = field(default_factory=DispatcherConfig)
    publisher_type: str = "console"
    http_endpoint: str = ""


def create_publisher(config: ServiceConfig) -> Publisher:
    """Build the publisher named by the config, falling back to the console."""
    if config.publisher_type == "http":
        return HTTPPublisher(config.http_endpoint, LoggingHTTPClient())
    if config.publisher_type == "multi":
        return MultiPublisher(
            ConsolePublisher(),
            HTTPPublisher(config.http_endpoint, LoggingHTTPClient()),
        )
    return ConsolePublisher()


class OutboxService:
    """Stores events in the outbox and controls their dispatch."""

    def __init__(
        self,
        connection: sqlite3.Connection,
        config: ServiceConfig | None = None,
        *,
        publisher: Publisher | None = None,
    ) -> None:
        self.config = config if config is not None else ServiceConfig()
        self.connection = connection
        self.repository = SqlRepository(connection)
        self.publisher = publisher if publisher is not None else create_publisher(self.config)
        self.dispatcher = OutboxDispatcher(
            self.repository, self.publisher, self.config.dispatcher_config
        )

    def publish_event(
        self,
        event_type: str,
        data: Any,
        aggregate_id: str | None = None,
        aggregate_type: str | None = None,
    ) -> Event:
        """Store a new event in the outbox and return it."""
        try:
            event = new_event(event_type, data, aggregate_id, aggregate_type)
        except OutboxError as exc:
            raise OutboxError(f"failed to create event: {exc}") from exc
        try:
            self.repository.store(event)
        except OutboxError as exc:
            raise OutboxError(f"failed to store event: {exc}") from exc
        logger.info("Event %s stored in outbox: %s", event.id, event_type)
        return event

    def start(self) -> None:
        """Start the dispatcher."""
        self.dispatcher.start()

    def stop(self) -> None:
        """Stop the dispatcher."""
        self.dispatcher.stop()

    def is_running(self) -> bool:
        """Return whether the dispatcher is running."""
        return self.dispatcher.is_running()

    def get_event_status(self, event_id: uuid.UUID) -> Event:
        """Return the stored event with the given id."""
        return self.repository.get_by_id(event_id)

    def get_pending_events_count(self) -> int:
        """Count events awaiting delivery, up to 1000."""
        return len(self.repository.get_pending_events(1000))

    def health(self) -> None:
        """Raise OutboxError unless the database answers and the dispatcher runs."""
        try:
            self.connection.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            raise OutboxError(f"database health check failed: {exc}") from exc
        if not self.dispatcher.is_running():
            raise OutboxError("dispatcher is not running")


class DomainEvent(ABC):
    """A business event that can be written to the outbox."""

    occurred_at: datetime

    @abstractmethod
    def event_type(self) -> str:
        """Name of the event type."""

    @abstractmethod
    def data(self) -> Any:
        """Payload to store with the event."""

    @abstractmethod
    def aggregate_id(self) -> str | None:
        """Identifier of the aggregate the event concerns."""

    @abstractmethod
    def aggregate_type(self) -> str | None:
        """Kind of aggregate the event concerns."""


class DomainEventPublisher:
    """Publishes domain events through an outbox service."""

    def __init__(self, service: OutboxService) -> None:
        self.service = service

    def publish_domain_event(self, domain_event: DomainEvent) -> Event:
        """Store the domain event in the outbox."""
        return self.service.publish_event(
            domain_event.event_type(),
            domain_event.data(),
            domain_event.aggregate_id(),
            domain_event.aggregate_type(),
        )


@dataclass
class SubscriptionCreated(DomainEvent):
    """A subscription was created."""

    id: str
    customer_id: str
    plan_id: str
    status: str
    occurred_at: datetime

    def event_type(self) -> str:
        return "subscription.created"

    def data(self) -> Any:
        return self

    def aggregate_id(self) -> str | None:
        return self.id

    def aggregate_type(self) -> str | None:
        return "subscription"


@dataclass
class PaymentProcessed(DomainEvent):
    """A payment against a subscription was processed."""

    id: str
    subscription_id: str
    amount: float
    currency: str
    status: str
    occurred_at: datetime

    def event_type(self) -> str:
        return "payment.processed"

    def data(self) -> Any:
        return self

    def aggregate_id(self) -> str | None:
        return self.subscription_id

    def aggregate_type(self) -> str | None:
        return "subscription"