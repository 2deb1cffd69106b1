# notification_digest/services/reconciler.py
"""
Reconciliation sweep for flushes lost while the expiry listener was down.

Redis does not queue expiry events for absent subscribers, so a key that
expired during a listener outage never produces a flush. The sweep looks
for groups that still hold unsent rows, whose newest row is older than the
window plus a grace period, and whose debounce key is no longer live, and
enqueues a flush for each. It runs inside the singleton listener process.
"""
import logging
from datetime import timedelta, timezone
from typing import Any, Callable, List

from ..config import DEBOUNCE_WINDOWS, RECONCILE_GRACE_S, DebounceWindows
from ..keys import DebounceKey
from ..models import Channel, NotificationType, utcnow
from ..observability import log_fields
from ..store import NotificationStore
from ..ttl_store import RedisTtlStore

logger = logging.getLogger(__name__)


def _aware(value):
    # sqlite devuelve datetimes naive
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Reconciler:
    def __init__(self, store: NotificationStore, ttl_store: RedisTtlStore,
                 enqueue: Callable[[DebounceKey], bool],
                 windows: DebounceWindows = DEBOUNCE_WINDOWS,
                 grace_s: float = RECONCILE_GRACE_S,
                 clock: Callable[[], Any] = utcnow):
        self.store = store
        self.ttl_store = ttl_store
        self.enqueue = enqueue
        self.windows = windows
        self.grace_s = grace_s
        self.clock = clock

    def sweep(self) -> List[DebounceKey]:
        now = _aware(self.clock())
        enqueued = []
        for channel in Channel:
            for group in self.store.pending_groups(channel):
                try:
                    notification_type = NotificationType(group.type)
                except ValueError:
                    continue
                window = self.windows.window(group.type, channel.value)
                if window <= 0:
                    continue
                due_at = _aware(group.newest_created_at) + timedelta(seconds=window + self.grace_s)
                if due_at > now:
                    continue
                key = DebounceKey(notification_type, group.group_on, channel)
                if self.ttl_store.exists(key.encode()):
                    continue
                logger.warning("orphan_group_reconciled", extra=log_fields(
                    "orphan_group_reconciled", key=str(key), rows=group.count,
                ))
                self.enqueue(key)
                enqueued.append(key)
        return enqueued
