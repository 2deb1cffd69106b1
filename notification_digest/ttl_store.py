# notification_digest/ttl_store.py
import logging
import threading
from typing import Iterator, Optional

import redis

from .errors import StoreUnavailable
from .observability import log_fields
from .redis_client import EXPIRED_CHANNEL, TRANSIENT_ERRORS, get_client, new_pubsub_client

logger = logging.getLogger(__name__)

# E = keyevent channel, x = expired events
_REQUIRED_FLAGS = "Ex"


class RedisTtlStore:
    """
    Debounce-window state kept as Redis keys with a TTL.

    SET with EX is atomic per key, so concurrent refreshes are last-write-wins
    and no lock is needed around arming.
    """

    def __init__(self, client: Optional[redis.Redis] = None, pubsub_client: Optional[redis.Redis] = None,
                 expired_channel: str = EXPIRED_CHANNEL):
        self._client = client
        self._pubsub_client = pubsub_client
        self.expired_channel = expired_channel

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_client()
        return self._client

    def refresh(self, key: str, ttl_s: int):
        """Creates the key or resets its TTL to the full window."""
        try:
            self.client.set(key, "1", ex=ttl_s)
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"ttl store unavailable: {e}") from e

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"ttl store unavailable: {e}") from e

    def ttl(self, key: str) -> int:
        try:
            return int(self.client.ttl(key))
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"ttl store unavailable: {e}") from e

    def enable_expiry_events(self) -> bool:
        """
        Turns on expired-key notifications. Managed Redis offerings usually
        forbid CONFIG; there the flag has to be set on the server side.
        """
        try:
            current = self.client.config_get("notify-keyspace-events").get("notify-keyspace-events", "")
            if "E" in current and ("x" in current or "A" in current):
                return True
            flags = "".join(sorted(set(current + _REQUIRED_FLAGS)))
            self.client.config_set("notify-keyspace-events", flags)
            logger.info("keyspace_events_enabled", extra=log_fields("keyspace_events_enabled", flags=flags))
            return True
        except redis.exceptions.ResponseError as e:
            logger.warning("keyspace_events_config_denied", extra=log_fields(
                "keyspace_events_config_denied", error=str(e),
            ))
            return False

    def expired_keys(self, stop: threading.Event, poll_timeout_s: float = 1.0) -> Iterator[Optional[str]]:
        """
        Yields the name of every key that expires while subscribed, and None
        whenever a poll times out so the caller can do periodic work.

        This is a broadcast: every subscriber gets every event, and events
        fired while nobody listens are lost.
        """
        if self._pubsub_client is None:
            self._pubsub_client = new_pubsub_client()
        pubsub = self._pubsub_client.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(self.expired_channel)
            logger.info("expiry_subscribed", extra=log_fields("expiry_subscribed", channel=self.expired_channel))
            while not stop.is_set():
                message = pubsub.get_message(timeout=poll_timeout_s)
                if not message:
                    yield None
                    continue
                if message.get("type") != "message":
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                yield data
        finally:
            pubsub.close()
