# billoutbox

The transactional outbox pattern for billing events, on top of SQLite.

Events such as a new subscription or a processed payment are written to an
`outbox_events` table. A background dispatcher polls that table, hands each
pending event to a publisher and records the outcome. Failed publishes get a
retry time computed with exponential backoff until a retry limit is reached,
and old completed events are deleted periodically.

The package uses only the standard library.

## Installing

```
pip install billoutbox
```

## Example

```python
import sqlite3
from datetime import datetime, timezone

from billoutbox.manager import Manager, OutboxSettings
from billoutbox.service import SubscriptionCreated

# The dispatcher works from background threads, so the connection must
# allow use from other threads.
connection = sqlite3.connect("outbox.db", check_same_thread=False)

manager = Manager(connection, OutboxSettings(poll_interval=1.0))
manager.start()  # creates the table if needed, then starts dispatching

events = manager.domain_events()
events.publish_domain_event(
    SubscriptionCreated(
        id="sub-1",
        customer_id="cus-1",
        plan_id="plan-basic",
        status="active",
        occurred_at=datetime.now(timezone.utc),
    )
)

print(manager.get_stats())
manager.stop()
```

## Parts

- `billoutbox.types`: the `Event` dataclass, the `Status` enum (`pending`,
  `processing`, `completed`, `failed`), the `EventData` envelope with
  `from_json` and `to_json`, the `Publisher` and `Repository` abstract
  classes, and the exceptions `OutboxError` and `ProcessingTimeoutError`.
- `billoutbox.repository`: `SqlRepository`, which keeps events in the
  `outbox_events` table of a `sqlite3` connection (`create_schema` creates
  the table and its indexes), `RepositoryError`, and `new_event`, which
  builds a pending event whose payload wraps a JSON-serialisable value
  (dataclasses, datetimes, UUIDs and enums included) in an `EventData`
  envelope.
- `billoutbox.publisher`: `ConsolePublisher` logs each event,
  `HTTPPublisher` posts a JSON document through an `HTTPClient` and fails
  on a status code of 400 or above, and `MultiPublisher` publishes to
  several publishers and raises the last failure. `LoggingHTTPClient`
  records and logs requests instead of sending them, and always answers 200.
  Failures are raised as `PublishError`.
- `billoutbox.dispatcher`: `OutboxDispatcher` and its `DispatcherConfig`.
  `start` and `stop` run and halt a dispatch loop and a cleanup loop in
  threads; `process_pending_events`, `process_event` and
  `cleanup_completed_events` can also be called directly.
- `billoutbox.service`: `OutboxService`, configured by `ServiceConfig`,
  joins an `SqlRepository`, a publisher chosen by `create_publisher`
  (`"console"`, `"http"`, `"multi"`, anything else meaning console) or passed
  as `publisher=`, and a dispatcher. `DomainEventPublisher` publishes
  `DomainEvent` objects such as `SubscriptionCreated` and `PaymentProcessed`.
- `billoutbox.manager`: `Manager`, configured by `OutboxSettings`, runs the
  migration, starts and stops the service, and reports health and
  statistics.

## Configuration

`DispatcherConfig` and `OutboxSettings` take intervals in seconds:

| field                  | default |
|------------------------|---------|
| `poll_interval`        | 5.0     |
| `batch_size`           | 10      |
| `max_retries`          | 3       |
| `retry_backoff_factor` | 2.0     |
| `cleanup_interval`     | 3600.0  |
| `completed_event_ttl`  | 86400.0 |
| `processing_timeout`   | 30.0    |

`OutboxSettings` also has `publisher_type` (default `"console"`) and
`http_endpoint`.

## How events move

1. `OutboxService.publish_event` creates an event with `new_event`, stores
   it as `pending` and returns it.
2. Every poll interval the dispatcher fetches up to `batch_size` events
   that are `pending`, or `failed` with a retry time that has passed,
   oldest first.
3. Each event is claimed with `mark_as_processing`, which only succeeds for
   an event in `pending`. It is then published; success marks it
   `completed`.
4. If publishing raises or takes longer than `processing_timeout`, the
   retry count goes up. Below `max_retries` the event is marked `failed`
   with the error message and a next retry time of
   `int(retry_backoff_factor ** retry_count)` seconds from now. At the limit
   it is marked `failed` with the error message.
5. Every cleanup interval, completed events last updated more than
   `completed_event_ttl` ago are deleted.

Because only `pending` events can be claimed, a `failed` event that is
fetched again is not republished until its status is set back to `pending`
with `SqlRepository.update_status`. An event left in `processing` is not
picked up again either.

## Monitoring

`OutboxService.get_pending_events_count` counts waiting events (up to
1000). `OutboxService.health` and `Manager.health` raise `OutboxError` if
the database does not answer or the dispatcher is not running.
`Manager.get_stats` returns a dictionary with `pending_events`,
`dispatcher_running` and `database_health` (`"healthy"` or
`"unhealthy"`, with `database_error` in the latter case).

## What it does not do

- Storage is SQLite only, through a `sqlite3` connection you supply.
- Nothing is sent over the network: `LoggingHTTPClient` only logs. To post
  events for real, pass `HTTPPublisher` your own `HTTPClient`.
- There is no command-line program; the package is a library.

## Running the tests

```
pip install -e ".[test]"
pytest
```