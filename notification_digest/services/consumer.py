# notification_digest/services/consumer.py
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Optional

from ..bus import Entry, RedisStreamBus, parse_fields
from ..errors import DispatchError, MalformedEvent, RecordRejected, StoreUnavailable
from ..observability import log_fields, set_correlation_id
from ..resilience import record_failure, record_success

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]

# fallos de infraestructura: se reintentan sin limite de entregas
TRANSIENT_FAILURES = (StoreUnavailable, DispatchError)


class StreamConsumer:
    """
    Competing consumer for one stream/group.

    A loop thread reads batches and hands each entry to a pool of handlers.
    An entry is acked only after its handler returns, or when it is malformed.
    Entries whose handler failed, crashed or overran the processing deadline
    stay pending and are reclaimed with XAUTOCLAIM by any consumer of the
    group, so handlers must be re-entrant. An entry that keeps failing with a
    non-transient error is moved to the dead-letter stream after
    ``max_deliveries`` deliveries.
    """

    def __init__(self, bus: RedisStreamBus, stream: str, group: str, consumer_name: str,
                 handler: Handler, *, concurrency: int = 8, batch_size: int = 32,
                 block_ms: int = 2000, deadline_s: float = 60.0, max_deliveries: int = 5,
                 dead_letter_stream: Optional[str] = None, retry_backoff_s: float = 0.5,
                 name: Optional[str] = None):
        self.bus = bus
        self.stream = stream
        self.group = group
        self.consumer_name = consumer_name
        self.handler = handler
        self.concurrency = max(1, concurrency)
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.deadline_s = deadline_s
        self.max_deliveries = max(1, max_deliveries)
        self.dead_letter_stream = dead_letter_stream or f"{stream}.dead"
        self.retry_backoff_s = retry_backoff_s
        self.name = name or f"{group}-consumer"
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_reclaim = 0.0

    # ---- ciclo de vida ----
    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=self.name)
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        self._thread = None
        self._executor = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        ensured = False
        backoff = self.retry_backoff_s
        while not self._stop.is_set():
            try:
                if not ensured:
                    self.bus.ensure_group(self.stream, self.group)
                    ensured = True
                    logger.info("consumer_started", extra=log_fields(
                        "consumer_started", stream=self.stream, group=self.group, consumer=self.consumer_name,
                    ))
                self.run_once(self._executor)
                backoff = self.retry_backoff_s
            except Exception as e:
                # el grupo puede no existir todavia (Redis caido al arrancar) o haber sido borrado (NOGROUP)
                ensured = False
                record_failure("consume", e)
                logger.error(f"consumer_loop error: {e}", extra=log_fields(
                    "consumer_loop_error", stream=self.stream, group=self.group, retry_in_s=backoff,
                ), exc_info=True)
                self._stop.wait(backoff)
                backoff = min(backoff * 2, 30.0)

    # ---- procesamiento ----
    def run_once(self, executor: Optional[ThreadPoolExecutor] = None) -> int:
        """Reads one batch (plus any reclaimable entries) and processes it."""
        entries = []
        now = time.monotonic()
        if now - self._last_reclaim >= self.deadline_s / 2:
            self._last_reclaim = now
            entries.extend(self.bus.reclaim(
                self.stream, self.group, self.consumer_name,
                min_idle_ms=int(self.deadline_s * 1000), count=self.batch_size,
            ))
        entries.extend(self.bus.read(
            self.stream, self.group, self.consumer_name, count=self.batch_size, block_ms=self.block_ms,
        ))
        if not entries:
            return 0

        if executor is None:
            for entry in entries:
                self.process(entry)
        else:
            futures = [executor.submit(self.process, entry) for entry in entries]
            # los que exceden el deadline quedan pendientes y se reclaman luego
            wait(futures, timeout=self.deadline_s)
        return len(entries)

    def process(self, entry: Entry) -> bool:
        """Runs the handler for one entry. Returns True if the entry was acked."""
        msg_id, fields = entry
        payload = parse_fields(fields)
        if payload is None:
            logger.warning("malformed_entry_dropped", extra=log_fields(
                "malformed_entry_dropped", stream=self.stream, msg_id=msg_id,
            ))
            self.bus.ack(self.stream, self.group, msg_id)
            return True

        cid = payload.get("correlationId") or payload.get("correlation_id")
        set_correlation_id(cid)
        try:
            self.handler(payload)
        except (MalformedEvent, RecordRejected) as e:
            # reintentar no arregla datos malformados
            logger.warning(f"malformed_event_dropped: {e}", extra=log_fields(
                "malformed_event_dropped", stream=self.stream, msg_id=msg_id,
            ))
            record_failure("consume", e, cid)
            self.bus.ack(self.stream, self.group, msg_id)
            return True
        except Exception as e:
            # sin ACK -> se reentrega despues del deadline
            logger.error(f"handler error: {e}", extra=log_fields(
                "handler_error", stream=self.stream, msg_id=msg_id,
            ), exc_info=True)
            record_failure("consume", e, cid)
            if isinstance(e, TRANSIENT_FAILURES) or not self._exhausted(msg_id):
                return False
            self._dead_letter(msg_id, payload, e)
            return True
        finally:
            set_correlation_id(None)

        self.bus.ack(self.stream, self.group, msg_id)
        record_success("consume", cid)
        return True

    def _exhausted(self, msg_id: str) -> bool:
        try:
            return self.bus.delivery_count(self.stream, self.group, msg_id) >= self.max_deliveries
        except StoreUnavailable as e:
            logger.warning(f"delivery count unavailable: {e}", extra=log_fields(
                "delivery_count_unavailable", stream=self.stream, msg_id=msg_id,
            ))
            return False

    def _dead_letter(self, msg_id: str, payload: Dict[str, Any], error: Exception):
        self.bus.publish(self.dead_letter_stream, {
            "stream": self.stream,
            "group": self.group,
            "msgId": msg_id,
            "error": f"{type(error).__name__}: {error}",
            "payload": payload,
        })
        self.bus.ack(self.stream, self.group, msg_id)
        logger.error("entry_dead_lettered", extra=log_fields(
            "entry_dead_lettered", stream=self.stream, msg_id=msg_id,
            dead_letter_stream=self.dead_letter_stream, max_deliveries=self.max_deliveries,
        ))
