# notification_digest/services/aggregation.py
"""
Aggregation worker.

Consumes flush messages, re-reads the unsent rows of the flushed key from the
notification store and delivers one digest per recipient. Delivery is
at-least-once: rows are marked sent only after the digest was handed off, so
a crash in between leaves them unsent for the next flush of the same key.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from pydantic import ValidationError

from ..errors import MalformedEvent
from ..keys import DebounceKey, decode_key
from ..models import Channel, DigestRow, EmailDigestEvent, FlushMessage, NotificationRow
from ..observability import log_fields
from ..store import NotificationStore
from .dispatch import EmailDigestPublisher, InAppPublisher

logger = logging.getLogger(__name__)

# titulo, plantilla singular, plantilla plural
_TEXTS = {
    "assetUploaded": ("New uploads", "1 new asset was uploaded to {group}", "{n} new assets were uploaded to {group}"),
    "assetViewed": ("New views", "Your asset in {group} got 1 new view", "Your assets in {group} got {n} new views"),
    "assetCommented": ("New comments", "1 new comment in {group}", "{n} new comments in {group}"),
}
_FALLBACK_TEXT = ("Notifications", "You have 1 new notification", "You have {n} new notifications")


class UserDigest(NamedTuple):
    for_user_id: str
    type: str
    group_on: str
    title: str
    message: str
    rows: List[NotificationRow]

    @property
    def row_ids(self) -> List[str]:
        return [r.id for r in self.rows]

    def in_app_payload(self) -> Dict[str, Any]:
        return {
            "forUserId": self.for_user_id,
            "type": self.type,
            "groupOn": self.group_on,
            "title": self.title,
            "message": self.message,
            "count": len(self.rows),
            "notificationIds": self.row_ids,
            "rows": [DigestRow.model_validate(r).model_dump(mode="json", by_alias=True) for r in self.rows],
        }

    def email_event(self, correlation_id: Optional[str] = None) -> EmailDigestEvent:
        return EmailDigestEvent(
            forUserId=self.for_user_id,
            type=self.type,
            groupOn=self.group_on,
            subject=f"{self.title}: {self.message}",
            rows=[DigestRow.model_validate(r) for r in self.rows],
            correlationId=correlation_id,
        )


class AggregationResult(NamedTuple):
    key: DebounceKey
    noop: bool
    recipients: int = 0
    rows: int = 0
    marked: int = 0


def format_digest(notification_type: str, group_on: str, count: int):
    title, one, many = _TEXTS.get(notification_type, _FALLBACK_TEXT)
    template = one if count == 1 else many
    return title, template.format(n=count, group=group_on)


def build_digests(rows: Iterable[NotificationRow]) -> List[UserDigest]:
    """
    Groups rows by recipient. Recipients come out sorted by id and each
    recipient's rows by ``(created_at, id)``, independent of store order.
    """
    by_user: Dict[str, List[NotificationRow]] = defaultdict(list)
    for row in rows:
        by_user[row.for_user_id].append(row)

    digests = []
    for user_id in sorted(by_user):
        user_rows = sorted(by_user[user_id], key=lambda r: (r.created_at, r.id))
        first = user_rows[0]
        title, message = format_digest(first.type, first.group_on, len(user_rows))
        digests.append(UserDigest(user_id, first.type, first.group_on, title, message, user_rows))
    return digests


def parse_flush(payload: Dict[str, Any]) -> FlushMessage:
    try:
        return FlushMessage.model_validate(payload)
    except ValidationError as e:
        raise MalformedEvent(f"invalid flush message: {e}", payload) from e


class AggregationWorker:
    def __init__(self, store: NotificationStore, in_app: InAppPublisher, email: EmailDigestPublisher):
        self.store = store
        self.in_app = in_app
        self.email = email

    def handle_message(self, payload: Dict[str, Any]) -> AggregationResult:
        return self.handle(parse_flush(payload))

    def handle(self, msg: FlushMessage) -> AggregationResult:
        key = decode_key(msg.debounce_key)
        if key is None:
            raise MalformedEvent(f"not a debounce key: {msg.debounce_key!r}", msg)

        rows = self.store.select_unsent(key.type.value, key.group_on, key.channel)
        if not rows:
            # p.ej. el usuario ya leyo todo por el camino en tiempo real
            logger.debug("empty_aggregate_noop", extra=log_fields("empty_aggregate_noop", key=str(key)))
            return AggregationResult(key, noop=True)

        digests = build_digests(rows)
        marked = 0
        for digest in digests:
            self._dispatch(key.channel, digest, msg.correlation_id)
            marked += self.store.mark_sent(digest.row_ids, key.channel)

        logger.info("digest_flushed", extra=log_fields(
            "digest_flushed", key=str(key), channel=key.channel.value,
            recipients=len(digests), rows=len(rows), marked=marked,
        ))
        return AggregationResult(key, noop=False, recipients=len(digests), rows=len(rows), marked=marked)

    def _dispatch(self, channel: Channel, digest: UserDigest, correlation_id: Optional[str]):
        if channel is Channel.IN_APP:
            self.in_app.send_to_user(digest.for_user_id, digest.in_app_payload(), correlation_id)
        else:
            self.email.publish(digest.email_event(correlation_id))
