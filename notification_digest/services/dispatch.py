# notification_digest/services/dispatch.py
import json
import logging
from typing import Any, Dict, Optional

import redis

from ..bus import RedisStreamBus
from ..config import EMAIL_STREAM, INAPP_CHANNEL_PREFIX
from ..errors import DispatchError, StoreUnavailable
from ..models import EmailDigestEvent
from ..observability import log_fields
from ..redis_client import TRANSIENT_ERRORS, get_client
from ..resilience import record_failure, record_success

logger = logging.getLogger(__name__)


class InAppPublisher:
    """
    Pushes in-app digests to the real-time gateway, which holds the live
    connections and subscribes to ``notifications:inapp:<userId>``.
    """

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = INAPP_CHANNEL_PREFIX):
        self._client = client
        self.prefix = prefix

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_client()
        return self._client

    def send_to_user(self, user_id: str, message: Dict[str, Any], correlation_id: Optional[str] = None) -> int:
        channel = f"{self.prefix}{user_id}"
        try:
            receivers = self.client.publish(channel, json.dumps(message, ensure_ascii=False, default=str))
        except TRANSIENT_ERRORS as e:
            record_failure("dispatch", e, correlation_id)
            raise DispatchError(f"in-app publish failed for {user_id}: {e}") from e
        record_success("dispatch", correlation_id)
        logger.debug("inapp_published", extra=log_fields(
            "inapp_published", channel=channel, receivers=receivers,
        ))
        return receivers


class EmailDigestPublisher:
    """Hands email digests to the external throttled email dispatch worker."""

    def __init__(self, bus: RedisStreamBus, stream: str = EMAIL_STREAM):
        self.bus = bus
        self.stream = stream

    def publish(self, event: EmailDigestEvent) -> str:
        payload = event.model_dump(mode="json", by_alias=True)
        try:
            msg_id = self.bus.publish(self.stream, payload)
        except StoreUnavailable as e:
            record_failure("dispatch", e, event.correlation_id)
            raise DispatchError(f"email digest publish failed for {event.for_user_id}: {e}") from e
        record_success("dispatch", event.correlation_id)
        return msg_id
