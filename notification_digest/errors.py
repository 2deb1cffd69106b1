"""
Error taxonomy for the digest pipeline.

MalformedEvent and RecordRejected are never retried: the consumer acks and
drops the message. Everything else leaves the message un-acked so the stream
redelivers it once the processing deadline passes; non-transient failures are
dead-lettered after a bounded number of deliveries.
"""


class DigestError(Exception):
    """Base exception for the digest pipeline."""


class CoordinatorError(DigestError):
    """Raised by the debounce coordinator."""


class AggregationError(DigestError):
    """Raised by the aggregation worker."""


class MalformedEvent(CoordinatorError):
    """The message cannot be processed as sent. Retrying will not fix it."""

    def __init__(self, message: str, payload=None):
        super().__init__(message)
        self.payload = payload


class RecordRejected(DigestError):
    """The store refused the row (constraint or data error). Retrying will not fix it."""


class StoreUnavailable(DigestError):
    """Transient infrastructure failure (database, TTL store or bus)."""


class DispatchError(AggregationError):
    """In-app or email dispatch could not be handed off."""
