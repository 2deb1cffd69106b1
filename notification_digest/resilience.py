# notification_digest/resilience.py
from collections import deque
from threading import Lock
from datetime import datetime, timezone
from typing import Optional, Dict, Any

# Operaciones rastreadas: consume, publish, flush_publish, dispatch
OPERATIONS = ("consume", "publish", "flush_publish", "dispatch")

class _Counter:
    def __init__(self):
        self.success = 0
        self.fail = 0
        self.consecutive_failures = 0
        self.last_success: Optional[str] = None
        self.last_error: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "fail": self.fail,
            "consecutive_failures": self.consecutive_failures,
            "last_success": self.last_success,
            "last_error": self.last_error,
        }

class _ResilienceState:
    def __init__(self, max_events: int = 100):
        self._lock = Lock()
        self.counters: Dict[str, _Counter] = {op: _Counter() for op in OPERATIONS}
        self.events = deque(maxlen=max_events)  # ring buffer

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def record_success(self, operation: str, correlation_id: Optional[str] = None):
        now = self._now()
        with self._lock:
            c = self.counters.setdefault(operation, _Counter())
            c.success += 1
            c.consecutive_failures = 0
            c.last_success = now
            self.events.append({
                "ts": now, "type": f"{operation}_success",
                "correlation_id": correlation_id
            })

    def record_failure(self, operation: str, error: str, correlation_id: Optional[str] = None):
        now = self._now()
        with self._lock:
            c = self.counters.setdefault(operation, _Counter())
            c.fail += 1
            c.consecutive_failures += 1
            c.last_error = {"ts": now, "error": error}
            self.events.append({
                "ts": now, "type": f"{operation}_failure",
                "error": error, "correlation_id": correlation_id
            })

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **{op: c.as_dict() for op, c in self.counters.items()},
                "recent": list(self.events),
            }

    def reset(self):
        with self._lock:
            self.counters = {op: _Counter() for op in OPERATIONS}
            self.events.clear()

_state = _ResilienceState()

def record_success(operation: str, correlation_id: Optional[str] = None):
    _state.record_success(operation, correlation_id)

def record_failure(operation: str, error: Exception | str, correlation_id: Optional[str] = None):
    _state.record_failure(operation, str(error), correlation_id)

def get_snapshot() -> Dict[str, Any]:
    return _state.snapshot()

def reset_state():
    _state.reset()
