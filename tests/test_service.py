import sqlite3
import time
import uuid
from datetime import datetime, timezone

import pytest

from billoutbox.dispatcher import DispatcherConfig
from billoutbox.publisher import ConsolePublisher, HTTPPublisher, MultiPublisher
from billoutbox.repository import RepositoryError, SqlRepository
from billoutbox.service import (
    DomainEventPublisher,
    OutboxService,
    PaymentProcessed,
    ServiceConfig,
    SubscriptionCreated,
    create_publisher,
)
from billoutbox.types import Event, EventData, OutboxError, Status


def wait_until(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def malformed_event():
    return Event(id=uuid.uuid4(), event_type="broken.event", event_data="not json")


@pytest.fixture
def connection():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    SqlRepository(conn).create_schema()
    yield conn
    conn.close()


@pytest.fixture
def service(connection):
    config = ServiceConfig(
        dispatcher_config=DispatcherConfig(
            poll_interval=0.05, batch_size=5, processing_timeout=1.0
        ),
        publisher_type="console",
    )
    svc = OutboxService(connection, config)
    yield svc
    svc.stop()


def test_create_publisher_console():
    publisher = create_publisher(ServiceConfig(publisher_type="console"))
    assert type(publisher) is ConsolePublisher
    with pytest.raises(OutboxError, match="failed to unmarshal event data"):
        publisher.publish(malformed_event())


def test_create_publisher_http_uses_endpoint():
    publisher = create_publisher(
        ServiceConfig(publisher_type="http", http_endpoint="http://localhost/events")
    )
    assert isinstance(publisher, HTTPPublisher)
    assert publisher.endpoint == "http://localhost/events"


def test_create_publisher_multi_wraps_console_and_http():
    publisher = create_publisher(
        ServiceConfig(publisher_type="multi", http_endpoint="http://localhost/events")
    )
    assert isinstance(publisher, MultiPublisher)
    assert [type(p) for p in publisher.publishers] == [ConsolePublisher, HTTPPublisher]
    assert publisher.publishers[1].endpoint == "http://localhost/events"


def test_create_publisher_unknown_falls_back_to_console():
    publisher = create_publisher(ServiceConfig(publisher_type="carrier-pigeon"))
    assert type(publisher) is ConsolePublisher
    with pytest.raises(OutboxError, match="failed to unmarshal event data"):
        publisher.publish(malformed_event())


def test_publish_event_stores_pending_event(service):
    event = service.publish_event(
        "test.service.event", {"service": "test"}, "agg-1", "test-aggregate"
    )

    stored = service.get_event_status(event.id)
    assert stored.status == Status.PENDING
    assert stored.event_type == "test.service.event"
    assert stored.aggregate_id == "agg-1"
    assert stored.aggregate_type == "test-aggregate"
    envelope = EventData.from_json(stored.event_data)
    assert envelope.type == "test.service.event"
    assert envelope.data == {"service": "test"}
    assert service.get_pending_events_count() == 1


def test_publish_event_is_processed_when_started(service):
    service.start()
    event = service.publish_event("test.service.event", {"service": "test"})

    wait_until(lambda: service.get_event_status(event.id).status == Status.COMPLETED)
    service.stop()

    assert service.get_pending_events_count() == 0
    assert service.get_event_status(event.id).status == Status.COMPLETED


def test_publish_event_with_unserializable_data(service):
    with pytest.raises(OutboxError, match="failed to create event"):
        service.publish_event("invalid.event", object())
    assert service.get_pending_events_count() == 0


def test_publish_event_store_failure(connection):
    connection.execute("DROP TABLE outbox_events")
    svc = OutboxService(connection)
    with pytest.raises(OutboxError, match="failed to store event"):
        svc.publish_event("test.event", {"key": "value"})


def test_get_event_status_unknown_id(service):
    with pytest.raises(RepositoryError):
        service.get_event_status(uuid.uuid4())


def test_start_stop_running_state(service):
    assert service.is_running() is False
    service.start()
    assert service.is_running() is True
    service.stop()
    assert service.is_running() is False


def test_health_when_running(service):
    service.start()
    service.health()
    assert service.is_running() is True


def test_health_requires_running_dispatcher(service):
    with pytest.raises(OutboxError, match="dispatcher is not running"):
        service.health()


def test_health_reports_database_failure():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    svc = OutboxService(conn)
    conn.close()
    with pytest.raises(OutboxError, match="database health check failed"):
        svc.health()


def test_publish_subscription_created(service):
    occurred = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    domain_event = SubscriptionCreated(
        id="sub-1", customer_id="cust-1", plan_id="plan-1", status="active", occurred_at=occurred
    )
    event = DomainEventPublisher(service).publish_domain_event(domain_event)

    stored = service.get_event_status(event.id)
    assert stored.event_type == "subscription.created"
    assert stored.aggregate_id == "sub-1"
    assert stored.aggregate_type == "subscription"
    payload = EventData.from_json(stored.event_data).data
    assert payload == {
        "id": "sub-1",
        "customer_id": "cust-1",
        "plan_id": "plan-1",
        "status": "active",
        "occurred_at": "2024-01-02T03:04:05Z",
    }


def test_publish_payment_processed(service):
    occurred = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    domain_event = PaymentProcessed(
        id="pay-1",
        subscription_id="sub-9",
        amount=12.5,
        currency="USD",
        status="succeeded",
        occurred_at=occurred,
    )
    event = DomainEventPublisher(service).publish_domain_event(domain_event)

    stored = service.get_event_status(event.id)
    assert stored.event_type == "payment.processed"
    assert stored.aggregate_id == "sub-9"
    assert stored.aggregate_type == "subscription"
    payload = EventData.from_json(stored.event_data).data
    assert payload["amount"] == 12.5
    assert payload["currency"] == "USD"


def test_domain_event_accessors():
    occurred = datetime(2024, 1, 1, tzinfo=timezone.utc)
    created = SubscriptionCreated("sub-1", "cust-1", "plan-1", "active", occurred)
    assert created.event_type() == "subscription.created"
    assert created.data() is created
    assert created.aggregate_id() == "sub-1"
    assert created.aggregate_type() == "subscription"
    assert created.occurred_at == occurred