"""Background dispatcher that delivers pending outbox events with retries."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .types import Event, ProcessingTimeoutError, Publisher, Repository, Status

logger = logging.getLogger(__name__)


@dataclass
class DispatcherConfig:
    """Dispatcher tuning; every interval is in seconds."""

    poll_interval: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    retry_backoff_factor: float = 2.0
    cleanup_interval: float = 3600.0
    completed_event_ttl: float = 86400.0
    processing_timeout: float = 30.0


class OutboxDispatcher:
    """Polls the repository for pending events and hands them to a publisher."""

    def __init__(
        self,
        repository: Repository,
        publisher: Publisher,
        config: DispatcherConfig | None = None,
    ) -> None:
        self.repository = repository
        self.publisher = publisher
        self.config = config if config is not None else DispatcherConfig()
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start the dispatch and cleanup loops; does nothing if already running."""
        with self._lock:
            if self._threads:
                return
            self._stopping = threading.Event()
            self._threads = [
                threading.Thread(
                    target=self._run_every,
                    args=(self.config.poll_interval, self.process_pending_events, self._stopping),
                    name="outbox-dispatch",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._run_every,
                    args=(self.config.cleanup_interval, self.cleanup_completed_events, self._stopping),
                    name="outbox-cleanup",
                    daemon=True,
                ),
            ]
            for thread in self._threads:
                thread.start()
            logger.info("Outbox dispatcher started")

    def stop(self) -> None:
        """Stop both loops and wait for them; does nothing if already stopped."""
        with self._lock:
            if not self._threads:
                return
            self._stopping.set()
            for thread in self._threads:
                thread.join()
            self._threads = []
            logger.info("Outbox dispatcher stopped")

    def is_running(self) -> bool:
        """Return whether the dispatcher loops are active."""
        with self._lock:
            return bool(self._threads)

    @staticmethod
    def _run_every(
        interval: float, action: Callable[[], object], stopping: threading.Event
    ) -> None:
        while not stopping.wait(interval):
            try:
                action()
            except Exception:
                logger.exception("Outbox dispatcher loop iteration failed")

    def process_pending_events(self) -> int:
        """Process one batch of pending events; return how many were delivered."""
        try:
            events = self.repository.get_pending_events(self.config.batch_size)
        except Exception as exc:
            logger.error("Failed to get pending events: %s", exc)
            return 0
        if not events:
            return 0

        logger.info("Processing %d pending events", len(events))
        delivered = 0
        for event in events:
            try:
                self.process_event(event)
            except Exception as exc:
                logger.error("Failed to process event %s: %s", event.id, exc)
            else:
                delivered += 1
        return delivered

    def process_event(self, event: Event) -> None:
        """Claim, publish and record the outcome of a single event."""
        try:
            self.repository.mark_as_processing(event.id)
        except Exception as exc:
            logger.error("Failed to mark event %s as processing: %s", event.id, exc)
            raise

        finished = threading.Event()
        failure: list[BaseException] = []

        def publish() -> None:
            try:
                self.publisher.publish(event)
            except Exception as exc:
                failure.append(exc)
            finally:
                finished.set()

        threading.Thread(target=publish, name="outbox-publish", daemon=True).start()

        if not finished.wait(self.config.processing_timeout):
            self._handle_publish_error(event, ProcessingTimeoutError("processing timeout"))
        if failure:
            self._handle_publish_error(event, failure[0])

        try:
            self.repository.update_status(event.id, Status.COMPLETED, None)
        except Exception as exc:
            logger.error("Failed to mark event %s as completed: %s", event.id, exc)
            raise
        logger.info("Successfully published event %s", event.id)

    def _handle_publish_error(self, event: Event, error: BaseException) -> None:
        """Record a failed attempt and always raise."""
        event.retry_count += 1
        message = str(error)

        if event.retry_count >= self.config.max_retries:
            try:
                self.repository.update_status(event.id, Status.FAILED, message)
            except Exception as exc:
                logger.error("Failed to mark event %s as failed: %s", event.id, exc)
                raise exc from error
            logger.error(
                "Event %s failed after %d retries: %s", event.id, event.retry_count, error
            )
            raise error

        backoff_seconds = int(self.config.retry_backoff_factor ** event.retry_count)
        next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=backoff_seconds)
        try:
            self.repository.increment_retry_count(event.id, next_retry_at, message)
        except Exception as exc:
            logger.error("Failed to increment retry count for event %s: %s", event.id, exc)
            raise exc from error
        logger.warning(
            "Event %s retry %d scheduled for %s: %s",
            event.id,
            event.retry_count,
            next_retry_at,
            error,
        )
        raise error

    def cleanup_completed_events(self) -> int:
        """Delete completed events older than the TTL; return how many went."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self.config.completed_event_ttl)
        try:
            deleted = self.repository.delete_completed_events(cutoff)
        except Exception as exc:
            logger.error("Failed to cleanup completed events: %s", exc)
            return 0
        if deleted > 0:
            logger.info("Cleaned up %d completed events older than %s", deleted, cutoff)
        return deleted