# notification_digest/config.py
import json
import os
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()

SERVICE_NAME = os.getenv("SERVICE_NAME", "notification-digest")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Roles que corre este proceso: coordinator, aggregator, listener
SERVICE_ROLES = [
    r.strip() for r in os.getenv("SERVICE_ROLES", "coordinator,aggregator").split(",") if r.strip()
]

# ---- Streams (bus) ----
RAW_STREAM = os.getenv("RAW_STREAM", "events.notification.raw")
FLUSH_STREAM = os.getenv("FLUSH_STREAM", "events.notification.flush")
EMAIL_STREAM = os.getenv("EMAIL_STREAM", "events.notification.email")

COORDINATOR_GROUP = os.getenv("COORDINATOR_GROUP", "debounce_coordinator")
AGGREGATOR_GROUP = os.getenv("AGGREGATOR_GROUP", "aggregation_worker")
CONSUMER_NAME = os.getenv("CONSUMER_NAME", f"digest-{os.getpid()}")

INAPP_CHANNEL_PREFIX = os.getenv("INAPP_CHANNEL_PREFIX", "notifications:inapp:")

# ---- Pool de handlers ----
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "8"))
READ_BATCH_SIZE = int(os.getenv("READ_BATCH_SIZE", "32"))
READ_BLOCK_MS = int(os.getenv("READ_BLOCK_MS", "2000"))
PROCESSING_DEADLINE_S = float(os.getenv("PROCESSING_DEADLINE_S", "60"))
MAX_DELIVERIES = int(os.getenv("MAX_DELIVERIES", "5"))

# ---- Expiry listener ----
OUTBOX_URL = os.getenv("OUTBOX_URL", "sqlite:///./flush_outbox.db")
PUBLISH_MAX_ATTEMPTS = int(os.getenv("PUBLISH_MAX_ATTEMPTS", "5"))
PUBLISH_BACKOFF_S = float(os.getenv("PUBLISH_BACKOFF_S", "0.5"))
PUBLISH_BACKOFF_MAX_S = float(os.getenv("PUBLISH_BACKOFF_MAX_S", "10"))
OUTBOX_DRAIN_INTERVAL_S = float(os.getenv("OUTBOX_DRAIN_INTERVAL_S", "30"))
CONFIGURE_KEYSPACE_EVENTS = os.getenv("CONFIGURE_KEYSPACE_EVENTS", "true").lower() == "true"

# ---- Reconciliacion ----
RECONCILE_INTERVAL_S = float(os.getenv("RECONCILE_INTERVAL_S", "300"))
RECONCILE_GRACE_S = float(os.getenv("RECONCILE_GRACE_S", "120"))

# ---- Ventanas de debounce ----
DEFAULT_INAPP_WINDOW_S = int(os.getenv("DEFAULT_INAPP_WINDOW_S", "10"))
DEFAULT_EMAIL_WINDOW_S = int(os.getenv("DEFAULT_EMAIL_WINDOW_S", "300"))


class ChannelWindows(BaseModel):
    """Debounce window in seconds per channel. 0 disables the channel."""

    inApp: int = Field(default=DEFAULT_INAPP_WINDOW_S, ge=0)
    email: int = Field(default=DEFAULT_EMAIL_WINDOW_S, ge=0)


class DebounceWindows:
    """Per-NotificationType debounce windows with a default fallback."""

    def __init__(self, overrides: Optional[Dict[str, ChannelWindows]] = None,
                 default: Optional[ChannelWindows] = None):
        self._overrides = dict(overrides or {})
        self._default = default or ChannelWindows()

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "DebounceWindows":
        from .models import NotificationType  # database lee el entorno: despues de load_dotenv()

        if not raw:
            return cls()
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("DEBOUNCE_WINDOWS must be a JSON object")
            unknown = sorted(set(data) - {t.value for t in NotificationType})
            if unknown:
                raise ValueError(f"unknown notification types: {unknown}")
            overrides = {k: ChannelWindows.model_validate(v) for k, v in data.items()}
        except (ValueError, ValidationError) as e:
            raise RuntimeError(f"DEBOUNCE_WINDOWS invalido: {e}") from e
        return cls(overrides)

    def window(self, notification_type: str, channel: str) -> int:
        windows = self._overrides.get(notification_type, self._default)
        return int(getattr(windows, channel))


DEBOUNCE_WINDOWS = DebounceWindows.from_json(os.getenv("DEBOUNCE_WINDOWS"))
