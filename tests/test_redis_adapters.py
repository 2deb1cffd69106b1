"""
Tests for the Redis-backed adapters against a mocked redis client.
"""

import json
import threading

import pytest
import redis

from notification_digest.bus import RedisStreamBus, parse_fields
from notification_digest.errors import DispatchError, StoreUnavailable
from notification_digest.models import DigestRow, EmailDigestEvent
from notification_digest.services.dispatch import EmailDigestPublisher, InAppPublisher
from notification_digest.ttl_store import RedisTtlStore


@pytest.fixture
def client(mocker):
    return mocker.MagicMock(spec=redis.Redis)


# =============================================================================
# TTL store
# =============================================================================


class TestRedisTtlStore:
    def test_refresh_sets_key_with_expiry(self, client):
        RedisTtlStore(client).refresh("debounce:assetUploaded:inApp:b", 10)

        client.set.assert_called_once_with("debounce:assetUploaded:inApp:b", "1", ex=10)

    def test_connection_error_is_store_unavailable(self, client):
        client.set.side_effect = redis.exceptions.ConnectionError("refused")

        with pytest.raises(StoreUnavailable):
            RedisTtlStore(client).refresh("k", 10)

    def test_exists(self, client):
        client.exists.return_value = 1

        assert RedisTtlStore(client).exists("k") is True

    def test_enables_expired_keyevents(self, client):
        client.config_get.return_value = {"notify-keyspace-events": ""}

        assert RedisTtlStore(client).enable_expiry_events() is True

        client.config_set.assert_called_once_with("notify-keyspace-events", "Ex")

    def test_keeps_existing_flags(self, client):
        client.config_get.return_value = {"notify-keyspace-events": "Ex"}

        assert RedisTtlStore(client).enable_expiry_events() is True

        client.config_set.assert_not_called()

    def test_config_denied_on_managed_redis(self, client):
        client.config_get.side_effect = redis.exceptions.ResponseError("unknown command 'CONFIG'")

        assert RedisTtlStore(client).enable_expiry_events() is False

    def test_expired_keys_yields_keys_and_idle_ticks(self, client, mocker):
        pubsub = mocker.MagicMock()
        pubsub.get_message.side_effect = [
            {"type": "message", "data": "debounce:assetUploaded:inApp:b"},
            None,
            {"type": "message", "data": b"debounce:assetViewed:email:a"},
        ]
        client.pubsub.return_value = pubsub
        store = RedisTtlStore(client, pubsub_client=client, expired_channel="__keyevent@0__:expired")
        stop = threading.Event()

        gen = store.expired_keys(stop, poll_timeout_s=0.01)

        assert next(gen) == "debounce:assetUploaded:inApp:b"
        assert next(gen) is None
        assert next(gen) == "debounce:assetViewed:email:a"
        stop.set()
        with pytest.raises(StopIteration):
            next(gen)
        pubsub.subscribe.assert_called_once_with("__keyevent@0__:expired")
        pubsub.close.assert_called_once()


# =============================================================================
# Stream bus
# =============================================================================


class TestRedisStreamBus:
    def test_publish_wraps_payload_as_json(self, client):
        client.xadd.return_value = "1-0"

        assert RedisStreamBus(client, maxlen=1000).publish("s", {"a": 1}) == "1-0"

        client.xadd.assert_called_once_with("s", {"data": '{"a": 1}'}, maxlen=1000, approximate=True)

    def test_publish_timeout_is_store_unavailable(self, client):
        client.xadd.side_effect = redis.exceptions.TimeoutError()

        with pytest.raises(StoreUnavailable):
            RedisStreamBus(client).publish("s", {})

    def test_ensure_group_ignores_busygroup(self, client):
        client.xgroup_create.side_effect = redis.exceptions.ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )

        RedisStreamBus(client).ensure_group("s", "g")

    def test_ensure_group_raises_other_errors(self, client):
        client.xgroup_create.side_effect = redis.exceptions.ResponseError("WRONGTYPE")

        with pytest.raises(redis.exceptions.ResponseError):
            RedisStreamBus(client).ensure_group("s", "g")

    def test_read_flattens_streams(self, client):
        client.xreadgroup.return_value = [["s", [("1-0", {"data": "{}"}), ("2-0", {"data": "{}"})]]]

        entries = RedisStreamBus(client).read("s", "g", "c", count=10, block_ms=100)

        assert [msg_id for msg_id, _ in entries] == ["1-0", "2-0"]
        client.xreadgroup.assert_called_once_with(
            groupname="g", consumername="c", streams={"s": ">"}, count=10, block=100,
        )

    def test_read_timeout_returns_empty(self, client):
        client.xreadgroup.return_value = None

        assert RedisStreamBus(client).read("s", "g", "c", count=10, block_ms=100) == []

    def test_reclaim_returns_claimed_entries(self, client):
        client.xautoclaim.return_value = ["0-0", [("3-0", {"data": "{}"})], []]

        entries = RedisStreamBus(client).reclaim("s", "g", "c", min_idle_ms=60000, count=5)

        assert entries == [("3-0", {"data": "{}"})]
        assert client.xautoclaim.call_args.kwargs["min_idle_time"] == 60000

    def test_delivery_count_from_xpending(self, client):
        client.xpending_range.return_value = [
            {"message_id": "1-0", "consumer": "c", "time_since_delivered": 5, "times_delivered": 4},
        ]

        assert RedisStreamBus(client).delivery_count("s", "g", "1-0") == 4

    def test_delivery_count_of_acked_entry_is_zero(self, client):
        client.xpending_range.return_value = []

        assert RedisStreamBus(client).delivery_count("s", "g", "1-0") == 0

    def test_ack(self, client):
        RedisStreamBus(client).ack("s", "g", "1-0")

        client.xack.assert_called_once_with("s", "g", "1-0")


class TestParseFields:
    @pytest.mark.parametrize("fields,expected", [
        ({"data": '{"a": 1}'}, {"a": 1}),
        ({"data": "nope"}, None),
        ({"data": "[1]"}, None),
        ({}, None),
        (None, None),
    ])
    def test_parse(self, fields, expected):
        assert parse_fields(fields) == expected


# =============================================================================
# Dispatch
# =============================================================================


class TestInAppPublisher:
    def test_publishes_on_user_channel(self, client):
        client.publish.return_value = 2

        receivers = InAppPublisher(client, prefix="notifications:inapp:").send_to_user("u1", {"count": 3})

        assert receivers == 2
        channel, body = client.publish.call_args.args
        assert channel == "notifications:inapp:u1"
        assert json.loads(body) == {"count": 3}

    def test_connection_error_is_dispatch_error(self, client):
        client.publish.side_effect = redis.exceptions.ConnectionError()

        with pytest.raises(DispatchError):
            InAppPublisher(client).send_to_user("u1", {})


class TestEmailDigestPublisher:
    def test_publishes_camel_case_event(self, mocker):
        bus = mocker.MagicMock()
        event = EmailDigestEvent(
            forUserId="u1", type="assetUploaded", groupOn="b", subject="s",
            rows=[DigestRow(id="r1", type="assetUploaded", boardId="b", createdAt="2026-01-01T00:00:00Z")],
        )

        EmailDigestPublisher(bus, stream="email").publish(event)

        stream, payload = bus.publish.call_args.args
        assert stream == "email"
        assert payload["forUserId"] == "u1"
        assert payload["rows"][0]["boardId"] == "b"

    def test_bus_outage_is_dispatch_error(self, mocker):
        bus = mocker.MagicMock()
        bus.publish.side_effect = StoreUnavailable("down")
        event = EmailDigestEvent(forUserId="u1", type="t", groupOn="g", subject="s", rows=[])

        with pytest.raises(DispatchError):
            EmailDigestPublisher(bus).publish(event)
