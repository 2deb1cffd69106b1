# notification_digest/workers.py
import logging
from typing import Iterable, List, Optional

from . import config
from .bus import RedisStreamBus
from .observability import log_fields
from .services.aggregation import AggregationWorker
from .services.consumer import StreamConsumer
from .services.coordinator import DebounceCoordinator
from .services.dispatch import EmailDigestPublisher, InAppPublisher
from .services.expiry_listener import ExpiryListener
from .services.outbox import FlushOutbox
from .services.reconciler import Reconciler
from .store import NotificationStore
from .ttl_store import RedisTtlStore

logger = logging.getLogger(__name__)

ROLES = ("coordinator", "aggregator", "listener")


class Runtime:
    """Background components this process runs, per SERVICE_ROLES."""

    def __init__(self, store: NotificationStore, bus: RedisStreamBus, ttl_store: RedisTtlStore,
                 roles: Iterable[str], in_app: Optional[InAppPublisher] = None,
                 outbox: Optional[FlushOutbox] = None):
        self.store = store
        self.bus = bus
        self.ttl_store = ttl_store
        self.roles = [r for r in roles]
        unknown = set(self.roles) - set(ROLES)
        if unknown:
            raise RuntimeError(f"SERVICE_ROLES desconocidos: {sorted(unknown)}")
        self.components: List = []

        if "coordinator" in self.roles:
            self.coordinator = DebounceCoordinator(store, ttl_store)
            self.components.append(self._consumer(
                config.RAW_STREAM, config.COORDINATOR_GROUP, self.coordinator.handle_message, "coordinator",
            ))
        if "aggregator" in self.roles:
            self.aggregator = AggregationWorker(store, in_app or InAppPublisher(), EmailDigestPublisher(bus))
            self.components.append(self._consumer(
                config.FLUSH_STREAM, config.AGGREGATOR_GROUP, self.aggregator.handle_message, "aggregator",
            ))
        if "listener" in self.roles:
            self.listener = ExpiryListener(ttl_store, bus, outbox or FlushOutbox())
            self.reconciler = Reconciler(store, ttl_store, self.listener.enqueue)
            self.listener.reconcile = self.reconciler.sweep
            self.components.append(self.listener)

    def _consumer(self, stream: str, group: str, handler, name: str) -> StreamConsumer:
        return StreamConsumer(
            self.bus, stream, group, config.CONSUMER_NAME, handler,
            concurrency=config.WORKER_CONCURRENCY,
            batch_size=config.READ_BATCH_SIZE,
            block_ms=config.READ_BLOCK_MS,
            deadline_s=config.PROCESSING_DEADLINE_S,
            max_deliveries=config.MAX_DELIVERIES,
            name=name,
        )

    def start(self):
        for component in self.components:
            component.start()
        logger.info("runtime_started", extra=log_fields("runtime_started", roles=self.roles))

    def stop(self):
        for component in self.components:
            component.stop()
        logger.info("runtime_stopped", extra=log_fields("runtime_stopped", roles=self.roles))

    def status(self):
        return {c.name: c.running for c in self.components}
