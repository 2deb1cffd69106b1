# notification_digest/services/coordinator.py
import logging
from typing import Any, Callable, Dict, List

from pydantic import ValidationError

from ..config import DEBOUNCE_WINDOWS, DebounceWindows
from ..errors import MalformedEvent
from ..keys import DebounceKey
from ..models import Channel, NotificationEvent, NotificationRow, utcnow
from ..observability import log_fields
from ..store import NotificationStore
from ..ttl_store import RedisTtlStore

logger = logging.getLogger(__name__)


def parse_event(payload: Dict[str, Any]) -> NotificationEvent:
    try:
        return NotificationEvent.model_validate(payload)
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}" for err in e.errors())
        raise MalformedEvent(errors, payload) from e


class DebounceCoordinator:
    """
    Persists every inbound event and arms or refreshes one TTL key per
    channel. A steady stream of events on the same key keeps pushing the
    flush back until a quiet period of a full window elapses.
    """

    def __init__(self, store: NotificationStore, ttl_store: RedisTtlStore,
                 windows: DebounceWindows = DEBOUNCE_WINDOWS,
                 clock: Callable[[], Any] = utcnow):
        self.store = store
        self.ttl_store = ttl_store
        self.windows = windows
        self.clock = clock

    def handle_message(self, payload: Dict[str, Any]) -> NotificationRow:
        return self.handle(parse_event(payload))

    def handle(self, event: NotificationEvent) -> NotificationRow:
        row = self.store.insert(event, created_at=self.clock())
        armed = self.arm(event)
        logger.info("notification_debounced", extra=log_fields(
            "notification_debounced",
            notification_id=row.id, type=event.type.value, for_user_id=event.for_user_id,
            group_on=event.group_on, keys=[str(k) for k in armed],
        ))
        return row

    def arm(self, event: NotificationEvent) -> List[DebounceKey]:
        armed = []
        for channel in Channel:
            window = self.windows.window(event.type.value, channel.value)
            if window <= 0:
                continue
            key = DebounceKey(event.type, event.group_on, channel)
            self.ttl_store.refresh(key.encode(), window)
            armed.append(key)
        return armed
