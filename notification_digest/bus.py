# notification_digest/bus.py
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import redis

from .errors import StoreUnavailable
from .observability import log_fields
from .redis_client import TRANSIENT_ERRORS, get_client

logger = logging.getLogger(__name__)

# (msg_id, fields) tal como los devuelve XREADGROUP
Entry = Tuple[str, Optional[Dict[str, Any]]]


def encode_payload(payload: Dict[str, Any]) -> Dict[str, str]:
    return {"data": json.dumps(payload, ensure_ascii=False, default=str)}


def parse_fields(fields: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Entries arrive as ``{'data': '<json string>'}``. Returns None when the
    entry has no usable JSON object.
    """
    if not fields:
        return None
    data = fields.get("data")
    if not isinstance(data, str):
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


class RedisStreamBus:
    """Event bus on Redis Streams; one consumer group per competing worker pool."""

    def __init__(self, client: Optional[redis.Redis] = None, maxlen: Optional[int] = 100_000):
        self._client = client
        self.maxlen = maxlen

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_client()
        return self._client

    def publish(self, stream: str, payload: Dict[str, Any]) -> str:
        try:
            return self.client.xadd(stream, encode_payload(payload), maxlen=self.maxlen, approximate=True)
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"bus unavailable: {e}") from e

    def ensure_group(self, stream: str, group: str):
        try:
            self.client.xgroup_create(name=stream, groupname=group, id="0", mkstream=True)
            logger.info("redis_group_created", extra=log_fields("redis_group_created", stream=stream, group=group))
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug("redis_group_exists", extra=log_fields("redis_group_exists", stream=stream, group=group))

    def read(self, stream: str, group: str, consumer: str, count: int, block_ms: int) -> List[Entry]:
        try:
            resp = self.client.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams={stream: ">"},
                count=count,
                block=block_ms,
            )
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"bus unavailable: {e}") from e
        entries: List[Entry] = []
        for _, messages in resp or []:
            entries.extend(messages)
        return entries

    def reclaim(self, stream: str, group: str, consumer: str, min_idle_ms: int, count: int) -> List[Entry]:
        """Takes over entries another handler left pending past the deadline."""
        try:
            resp = self.client.xautoclaim(
                name=stream,
                groupname=group,
                consumername=consumer,
                min_idle_time=min_idle_ms,
                start_id="0-0",
                count=count,
            )
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"bus unavailable: {e}") from e
        # [next_start_id, [(id, fields), ...], deleted_ids]
        return list(resp[1]) if resp and len(resp) > 1 else []

    def delivery_count(self, stream: str, group: str, msg_id: str) -> int:
        """Times the group has delivered a pending entry (0 once acked)."""
        try:
            resp = self.client.xpending_range(stream, group, min=msg_id, max=msg_id, count=1)
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"bus unavailable: {e}") from e
        return int(resp[0]["times_delivered"]) if resp else 0

    def ack(self, stream: str, group: str, msg_id: str):
        try:
            self.client.xack(stream, group, msg_id)
        except TRANSIENT_ERRORS as e:
            raise StoreUnavailable(f"bus unavailable: {e}") from e
