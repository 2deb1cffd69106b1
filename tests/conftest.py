"""
Test configuration and fixtures for the digest pipeline.

This module provides:
- An in-memory SQLite notification store
- Fake TTL store, bus and in-app publisher sharing one controllable clock
- Wired coordinator, aggregation worker and expiry listener

Usage:
    def test_example(coordinator, ttl_store, listener, aggregator):
        coordinator.handle_message({...})
        for key in ttl_store.advance(10):
            listener.on_expired(key)
"""

import pytest
from sqlalchemy.orm import sessionmaker

from notification_digest.config import ChannelWindows, DebounceWindows
from notification_digest.database import init_db, make_engine
from notification_digest.resilience import reset_state
from notification_digest.services.aggregation import AggregationWorker
from notification_digest.services.coordinator import DebounceCoordinator
from notification_digest.services.dispatch import EmailDigestPublisher
from notification_digest.services.expiry_listener import ExpiryListener
from notification_digest.services.outbox import FlushOutbox
from notification_digest.store import NotificationStore

from tests.fakes import FakeBus, FakeClock, FakeTtlStore, RecordingInApp


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clear_resilience():
    """Reset resilience counters before each test."""
    reset_state()
    yield
    reset_state()


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return NotificationStore(sessionmaker(bind=engine, autoflush=False))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ttl_store(clock):
    return FakeTtlStore(clock)


@pytest.fixture
def bus():
    return FakeBus()


@pytest.fixture
def in_app():
    return RecordingInApp()


@pytest.fixture
def outbox():
    return FlushOutbox(engine=make_engine("sqlite://"))


@pytest.fixture
def windows():
    """10s in-app and 60s email for uploads; comments skip email."""
    return DebounceWindows({
        "assetUploaded": ChannelWindows(inApp=10, email=60),
        "assetCommented": ChannelWindows(inApp=5, email=0),
    }, default=ChannelWindows(inApp=20, email=120))


# =============================================================================
# Pipeline Fixtures
# =============================================================================


@pytest.fixture
def coordinator(store, ttl_store, windows, clock):
    return DebounceCoordinator(store, ttl_store, windows=windows, clock=clock)


@pytest.fixture
def aggregator(store, in_app, bus):
    return AggregationWorker(store, in_app, EmailDigestPublisher(bus, stream="events.notification.email"))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def listener(ttl_store, bus, outbox, sleeps):
    return ExpiryListener(
        ttl_store, bus, outbox,
        flush_stream="events.notification.flush",
        max_attempts=3, backoff_s=0.5, backoff_max_s=1.0,
        configure_keyspace=True, sleep=sleeps.append,
    )


@pytest.fixture
def upload_event():
    def _make(user="user-1", board="board42", **overrides):
        payload = {
            "type": "assetUploaded",
            "forUserId": user,
            "boardId": board,
            "groupOn": board,
        }
        payload.update(overrides)
        return payload
    return _make
