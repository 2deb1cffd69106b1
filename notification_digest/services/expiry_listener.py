# notification_digest/services/expiry_listener.py
"""
Expiry listener: bridges the TTL store's broadcast expiry channel to the
durable flush stream.

Every subscriber of the expiry channel receives every expiry, so this
component must run as exactly one replica (fixed single-replica deployment
or an exclusive lease). A second replica would enqueue each flush twice.
It carries no business logic: down means flushes are late, never doubled.
"""
import logging
import threading
import time
from typing import Callable, Optional

from ..bus import RedisStreamBus
from ..config import (
    CONFIGURE_KEYSPACE_EVENTS,
    FLUSH_STREAM,
    OUTBOX_DRAIN_INTERVAL_S,
    PUBLISH_BACKOFF_MAX_S,
    PUBLISH_BACKOFF_S,
    PUBLISH_MAX_ATTEMPTS,
    RECONCILE_INTERVAL_S,
)
from ..errors import StoreUnavailable
from ..keys import DebounceKey, decode_key
from ..models import FlushMessage
from ..observability import log_fields, new_correlation_id, set_correlation_id
from ..redis_client import TRANSIENT_ERRORS
from ..resilience import record_failure, record_success
from ..ttl_store import RedisTtlStore
from .outbox import FlushOutbox

logger = logging.getLogger(__name__)


class ExpiryListener:
    name = "expiry-listener"

    def __init__(self, ttl_store: RedisTtlStore, bus: RedisStreamBus, outbox: FlushOutbox, *,
                 flush_stream: str = FLUSH_STREAM,
                 max_attempts: int = PUBLISH_MAX_ATTEMPTS,
                 backoff_s: float = PUBLISH_BACKOFF_S,
                 backoff_max_s: float = PUBLISH_BACKOFF_MAX_S,
                 drain_interval_s: float = OUTBOX_DRAIN_INTERVAL_S,
                 reconcile: Optional[Callable[[], object]] = None,
                 reconcile_interval_s: float = RECONCILE_INTERVAL_S,
                 configure_keyspace: bool = CONFIGURE_KEYSPACE_EVENTS,
                 retry_backoff_s: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        self.ttl_store = ttl_store
        self.bus = bus
        self.outbox = outbox
        self.flush_stream = flush_stream
        self.max_attempts = max(1, max_attempts)
        self.backoff_s = backoff_s
        self.backoff_max_s = backoff_max_s
        self.drain_interval_s = drain_interval_s
        self.reconcile = reconcile
        self.reconcile_interval_s = reconcile_interval_s
        self.configure_keyspace = configure_keyspace
        self.retry_backoff_s = retry_backoff_s
        self._sleep = sleep
        self._monotonic = monotonic
        self._last_drain = monotonic()
        self._last_reconcile = monotonic()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---- protocolo ----
    def on_expired(self, raw_key: str) -> bool:
        """Returns True if the expired key was a debounce key and its flush reached the bus."""
        key = decode_key(raw_key)
        if key is None:
            logger.debug("expired_key_ignored", extra=log_fields("expired_key_ignored", key=raw_key))
            return False
        return self.enqueue(key)

    def enqueue(self, key: DebounceKey, correlation_id: Optional[str] = None) -> bool:
        msg = FlushMessage(debounceKey=key.encode(), correlationId=correlation_id or new_correlation_id())
        set_correlation_id(msg.correlation_id)
        try:
            # outbox primero: una caida antes de confirmar no pierde el flush
            entry_id = self.outbox.add(msg)
            return self._publish(entry_id, msg)
        finally:
            set_correlation_id(None)

    def _publish(self, entry_id: int, msg: FlushMessage) -> bool:
        payload = msg.model_dump(mode="json", by_alias=True)
        delay = self.backoff_s
        for attempt in range(1, self.max_attempts + 1):
            try:
                msg_id = self.bus.publish(self.flush_stream, payload)
            except StoreUnavailable as e:
                self.outbox.record_attempt(entry_id)
                record_failure("flush_publish", e, msg.correlation_id)
                logger.warning("flush_publish_retry", extra=log_fields(
                    "flush_publish_retry", key=msg.debounce_key, attempt=attempt, error=str(e),
                ))
                if attempt < self.max_attempts:
                    self._sleep(delay)
                    delay = min(delay * 2, self.backoff_max_s)
                continue
            self.outbox.remove(entry_id)
            record_success("flush_publish", msg.correlation_id)
            logger.info("flush_enqueued", extra=log_fields(
                "flush_enqueued", key=msg.debounce_key, stream=self.flush_stream, msg_id=msg_id,
            ))
            return True

        # queda en el outbox; el siguiente drain lo reintenta
        logger.error("flush_publish_exhausted", extra=log_fields(
            "flush_publish_exhausted", key=msg.debounce_key, attempts=self.max_attempts,
            outbox_entry=entry_id,
        ))
        return False

    def drain_outbox(self) -> int:
        """Publishes flushes left in the outbox. Stops at the first failure."""
        published = 0
        for pending in self.outbox.pending():
            set_correlation_id(pending.message.correlation_id)
            try:
                if not self._publish(pending.id, pending.message):
                    break
            finally:
                set_correlation_id(None)
            published += 1
        if published:
            logger.info("outbox_drained", extra=log_fields("outbox_drained", published=published))
        return published

    def maintenance(self):
        now = self._monotonic()
        if now - self._last_drain >= self.drain_interval_s:
            self._last_drain = now
            self.drain_outbox()
        if self.reconcile is not None and self.reconcile_interval_s > 0 \
                and now - self._last_reconcile >= self.reconcile_interval_s:
            self._last_reconcile = now
            try:
                self.reconcile()
            except StoreUnavailable as e:
                logger.warning("reconcile_skipped", extra=log_fields("reconcile_skipped", error=str(e)))

    # ---- ciclo de vida ----
    def run(self, stop: threading.Event):
        logger.warning("duplicate_flush_risk", extra=log_fields(
            "duplicate_flush_risk",
            detail="expiry listener must run as a single replica; each extra replica duplicates flushes",
        ))
        if self.configure_keyspace:
            try:
                self.ttl_store.enable_expiry_events()
            except TRANSIENT_ERRORS as e:
                logger.warning("keyspace_events_unchecked", extra=log_fields("keyspace_events_unchecked", error=str(e)))
        try:
            self.drain_outbox()
        except Exception as e:
            # se reintenta en el siguiente maintenance()
            record_failure("consume", e)
            logger.error(f"startup drain failed: {e}", extra=log_fields("outbox_drain_failed"), exc_info=True)

        backoff = self.retry_backoff_s
        while not stop.is_set():
            try:
                for raw_key in self.ttl_store.expired_keys(stop):
                    if raw_key is not None:
                        self.on_expired(raw_key)
                    self.maintenance()
                    backoff = self.retry_backoff_s
            except TRANSIENT_ERRORS as e:
                record_failure("consume", e)
                logger.error(f"expiry subscription lost: {e}", extra=log_fields(
                    "expiry_subscription_lost", retry_in_s=backoff,
                ))
            except Exception as e:
                # outbox local o store caidos: el listener sigue vivo, la reconciliacion recupera la clave
                record_failure("consume", e)
                logger.error(f"expiry listener error: {e}", extra=log_fields(
                    "expiry_listener_error", retry_in_s=backoff,
                ), exc_info=True)
            else:
                continue
            stop.wait(backoff)
            backoff = min(backoff * 2, 30.0)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, args=(self._stop,), name="expiry-listener", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
