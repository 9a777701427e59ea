"""Lifecycle management for the outbox: schema migration, dispatch and monitoring."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from .dispatcher import DispatcherConfig
from .service import DomainEventPublisher, OutboxService, ServiceConfig
from .types import OutboxError

logger = logging.getLogger(__name__)


@dataclass
class OutboxSettings:
    """Application-level outbox settings; intervals are in seconds."""

    poll_interval: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    retry_backoff_factor: float = 2.0
    cleanup_interval: float = 3600.0
    completed_event_ttl: float = 86400.0
    processing_timeout: float = 30.0
    publisher_type: str = "console"
    http_endpoint: str = ""

    def _service_config(self) -> ServiceConfig:
        return ServiceConfig(
            dispatcher_config=DispatcherConfig(
                poll_interval=self.poll_interval,
                batch_size=self.batch_size,
                max_retries=self.max_retries,
                retry_backoff_factor=self.retry_backoff_factor,
                cleanup_interval=self.cleanup_interval,
                completed_event_ttl=self.completed_event_ttl,
                processing_timeout=self.processing_timeout,
            ),
            publisher_type=self.publisher_type,
            http_endpoint=self.http_endpoint,
        )


class Manager:
    """Owns the outbox service and the database it runs against."""

    def __init__(
        self, connection: sqlite3.Connection, settings: OutboxSettings | None = None
    ) -> None:
        self.connection = connection
        self.settings = settings if settings is not None else OutboxSettings()
        try:
            self.service = OutboxService(connection, self.settings._service_config())
        except OutboxError as exc:
            raise OutboxError(f"failed to create outbox service: {exc}") from exc

    def start(self) -> None:
        """Migrate the schema and start dispatching."""
        logger.info("Starting outbox manager...")
        try:
            self.run_migrations()
        except OutboxError as exc:
            raise OutboxError(f"failed to run migrations: {exc}") from exc
        try:
            self.service.start()
        except OutboxError as exc:
            raise OutboxError(f"failed to start outbox service: {exc}") from exc
        logger.info("Outbox manager started successfully")

    def stop(self) -> None:
        """Stop dispatching."""
        logger.info("Stopping outbox manager...")
        try:
            self.service.stop()
        except OutboxError as exc:
            raise OutboxError(f"failed to stop outbox service: {exc}") from exc
        logger.info("Outbox manager stopped")

    def domain_events(self) -> DomainEventPublisher:
        """Return a publisher for domain events backed by this manager's service."""
        return DomainEventPublisher(self.service)

    def health(self) -> None:
        """Raise OutboxError if the outbox is unhealthy."""
        self.service.health()

    def run_migrations(self) -> None:
        """Create the outbox table if it does not exist yet."""
        logger.info("Running outbox migrations...")
        try:
            row = self.connection.execute(
                "SELECT EXISTS (SELECT 1 FROM sqlite_master"
                " WHERE type = 'table' AND name = 'outbox_events')"
            ).fetchone()
        except sqlite3.Error as exc:
            raise OutboxError(f"failed to check if outbox table exists: {exc}") from exc
        if not row[0]:
            logger.info("Creating outbox table...")
            self.service.repository.create_schema()
            logger.info("Outbox table created successfully")

    def get_stats(self) -> dict[str, Any]:
        """Return monitoring figures for the outbox."""
        try:
            pending = self.service.get_pending_events_count()
        except OutboxError as exc:
            raise OutboxError(f"failed to get pending events count: {exc}") from exc
        stats: dict[str, Any] = {
            "pending_events": pending,
            "dispatcher_running": self.service.is_running(),
        }
        try:
            self.connection.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            stats["database_health"] = "unhealthy"
            stats["database_error"] = str(exc)
        else:
            stats["database_health"] = "healthy"
        return stats