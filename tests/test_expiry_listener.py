"""
Tests for the expiry listener (broadcast expiry -> durable flush stream).

Tests cover:
- One flush per expired debounce key, foreign keys ignored
- Publish retry with backoff and the local outbox
- Periodic drain and reconciliation hooks
- The subscription loop
"""

import threading

from sqlalchemy.exc import OperationalError

from notification_digest.resilience import get_snapshot
from notification_digest.services.expiry_listener import ExpiryListener

FLUSH_STREAM = "events.notification.flush"
KEY = "debounce:assetUploaded:inApp:board42"


class TestOnExpired:
    def test_enqueues_exactly_one_flush(self, listener, bus, outbox):
        assert listener.on_expired(KEY) is True

        messages = bus.messages(FLUSH_STREAM)
        assert len(messages) == 1
        assert messages[0]["debounceKey"] == KEY
        assert messages[0]["firedAt"]
        assert messages[0]["correlationId"]
        assert outbox.count() == 0

    def test_ignores_keys_that_are_not_debounce_keys(self, listener, bus, outbox):
        assert listener.on_expired("session:abc") is False

        assert bus.messages(FLUSH_STREAM) == []
        assert outbox.count() == 0

    def test_flush_carries_no_notification_payload(self, listener, bus):
        listener.on_expired(KEY)

        assert set(bus.messages(FLUSH_STREAM)[0]) == {"debounceKey", "firedAt", "correlationId"}


class TestPublishRetry:
    def test_retries_with_exponential_backoff(self, listener, bus, sleeps, outbox):
        bus.fail_publishes = 2

        assert listener.on_expired(KEY) is True

        assert sleeps == [0.5, 1.0]
        assert len(bus.messages(FLUSH_STREAM)) == 1
        assert outbox.count() == 0
        snapshot = get_snapshot()["flush_publish"]
        assert (snapshot["fail"], snapshot["success"], snapshot["consecutive_failures"]) == (2, 1, 0)

    def test_exhausted_retries_keep_flush_in_outbox(self, listener, bus, outbox):
        bus.fail_publishes = 3

        assert listener.on_expired(KEY) is False

        assert bus.messages(FLUSH_STREAM) == []
        pending = outbox.pending()
        assert [p.message.debounce_key for p in pending] == [KEY]
        assert pending[0].attempts == 3
        assert get_snapshot()["flush_publish"]["consecutive_failures"] == 3

    def test_drain_publishes_outbox_once(self, listener, bus, outbox):
        bus.fail_publishes = 3
        listener.on_expired(KEY)

        assert listener.drain_outbox() == 1
        assert listener.drain_outbox() == 0

        assert [m["debounceKey"] for m in bus.messages(FLUSH_STREAM)] == [KEY]
        assert outbox.count() == 0

    def test_drain_keeps_correlation_id(self, listener, bus, outbox):
        bus.fail_publishes = 3
        listener.on_expired(KEY)
        cid = outbox.pending()[0].message.correlation_id

        listener.drain_outbox()

        assert bus.messages(FLUSH_STREAM)[0]["correlationId"] == cid

    def test_drain_stops_at_first_failure(self, listener, bus, outbox):
        bus.fail_publishes = 6
        listener.on_expired(KEY)
        listener.on_expired("debounce:assetUploaded:email:board42")
        bus.fail_publishes = 3

        assert listener.drain_outbox() == 0
        assert outbox.count() == 2

    def test_outbox_survives_listener_restart(self, ttl_store, bus, outbox, sleeps):
        first = ExpiryListener(ttl_store, bus, outbox, flush_stream=FLUSH_STREAM,
                               max_attempts=1, sleep=sleeps.append)
        bus.fail_publishes = 1
        first.on_expired(KEY)

        second = ExpiryListener(ttl_store, bus, outbox, flush_stream=FLUSH_STREAM, sleep=sleeps.append)
        second.drain_outbox()

        assert [m["debounceKey"] for m in bus.messages(FLUSH_STREAM)] == [KEY]


class TestMaintenance:
    def test_runs_drain_and_reconcile_on_their_intervals(self, ttl_store, bus, outbox):
        now = [0.0]
        sweeps = []
        listener = ExpiryListener(
            ttl_store, bus, outbox, flush_stream=FLUSH_STREAM,
            drain_interval_s=10, reconcile=lambda: sweeps.append(now[0]), reconcile_interval_s=60,
            sleep=lambda s: None, monotonic=lambda: now[0],
        )
        drains = []
        listener.drain_outbox = lambda: drains.append(now[0]) or 0

        for t in (5, 10, 15, 20, 60):
            now[0] = t
            listener.maintenance()

        assert drains == [10, 20, 60]
        assert sweeps == [60]

    def test_reconcile_disabled_with_zero_interval(self, ttl_store, bus, outbox):
        sweeps = []
        listener = ExpiryListener(ttl_store, bus, outbox, reconcile=lambda: sweeps.append(1),
                                  reconcile_interval_s=0, monotonic=lambda: 1e9)

        listener.maintenance()

        assert sweeps == []


class TestRun:
    def test_run_bridges_subscription_to_stream(self, listener, ttl_store, bus):
        ttl_store.pending_expired = [KEY, "unrelated", "debounce:assetViewed:email:a1"]

        listener.run(threading.Event())

        assert ttl_store.keyspace_enabled
        assert [m["debounceKey"] for m in bus.messages(FLUSH_STREAM)] == [
            KEY, "debounce:assetViewed:email:a1",
        ]

    def test_run_drains_outbox_before_subscribing(self, listener, ttl_store, bus, outbox):
        bus.fail_publishes = 3
        listener.on_expired(KEY)

        listener.run(threading.Event())

        assert [m["debounceKey"] for m in bus.messages(FLUSH_STREAM)] == [KEY]
        assert outbox.count() == 0

    def test_outbox_failure_does_not_stop_the_listener(self, listener, ttl_store, bus, outbox, mocker):
        real_add = outbox.add
        failures = [OperationalError("INSERT", {}, Exception("database is locked"))]

        def add_failing_once(msg):
            if failures:
                raise failures.pop()
            return real_add(msg)

        mocker.patch.object(outbox, "add", side_effect=add_failing_once)
        listener.retry_backoff_s = 0.0
        ttl_store.pending_expired = [KEY, "debounce:assetViewed:email:a1"]

        listener.run(threading.Event())

        assert [m["debounceKey"] for m in bus.messages(FLUSH_STREAM)] == ["debounce:assetViewed:email:a1"]
        assert get_snapshot()["consume"]["fail"] == 1
