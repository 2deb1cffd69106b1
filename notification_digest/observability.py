# notification_digest/observability.py
import contextvars
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# correlation id del mensaje o request en curso (por thread / por task)
_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("correlation_id", default=None)


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields from log_fields() are merged in."""

    def __init__(self, service: str):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": _correlation_id.get(),
        }
        fields = getattr(record, "extra", None)
        if isinstance(fields, dict):
            line.update(fields)
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps({k: v for k, v in line.items() if v is not None}, ensure_ascii=False, default=str)


def init_logging(service_name: str, level: str = "INFO") -> logging.Logger:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(service_name))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())
    for name in ("uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level.upper())
    return logging.getLogger(service_name)


def log_fields(event: str, **fields: Any) -> Dict[str, Any]:
    """Builds the ``extra`` kwarg understood by JsonFormatter."""
    return {"extra": {"event": event, **fields}}


def set_correlation_id(cid: Optional[str]):
    _correlation_id.set(cid)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuses the caller's correlation id or mints one, and echoes it back."""

    def __init__(self, app, header_name: str = "x-correlation-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        cid = request.headers.get(self.header_name) or new_correlation_id()
        set_correlation_id(cid)
        try:
            response: Response = await call_next(request)
        finally:
            set_correlation_id(None)
        response.headers[self.header_name] = cid
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, logger: logging.Logger):
        super().__init__(app)
        self.logger = logger

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        fields = {
            "http.method": request.method,
            "http.path": request.url.path,
            "client.ip": request.client.host if request.client else None,
        }
        try:
            response: Response = await call_next(request)
        except Exception as e:
            fields["duration_ms"] = int((time.perf_counter() - start) * 1000)
            self.logger.error(f"http_request_error: {e}", extra=log_fields("http_request_error", **fields),
                              exc_info=True)
            raise
        fields["http.status_code"] = response.status_code
        fields["duration_ms"] = int((time.perf_counter() - start) * 1000)
        self.logger.info("http_request", extra=log_fields("http_request", **fields))
        return response
