# notification_digest/main.py
from typing import Optional

from fastapi import FastAPI

from . import config
from .bus import RedisStreamBus
from .database import get_session_factory, init_db
from .observability import init_logging, CorrelationIdMiddleware, RequestLoggingMiddleware
from .redis_client import get_client
from .resilience import get_snapshot
from .routers.notifications import router as notifications_router
from .store import NotificationStore
from .ttl_store import RedisTtlStore
from .workers import Runtime

logger = init_logging(config.SERVICE_NAME, config.LOG_LEVEL)


def create_app(store: Optional[NotificationStore] = None, start_workers: bool = True) -> FastAPI:
    app = FastAPI(title=config.SERVICE_NAME, version="1.0.0")

    app.add_middleware(CorrelationIdMiddleware, header_name="x-correlation-id")
    app.add_middleware(RequestLoggingMiddleware, logger=logger)

    app.state.store = store
    app.state.runtime = None

    @app.on_event("startup")
    def on_startup():
        if app.state.store is None:
            init_db()
            app.state.store = NotificationStore(get_session_factory())
        if start_workers and config.SERVICE_ROLES:
            app.state.runtime = Runtime(
                app.state.store, RedisStreamBus(), RedisTtlStore(), config.SERVICE_ROLES,
            )
            app.state.runtime.start()

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.runtime is not None:
            app.state.runtime.stop()

    @app.get("/health")
    def health():
        return {"status": "healthy", "service": config.SERVICE_NAME}

    @app.get("/live")
    def live():
        runtime = app.state.runtime
        return {"ok": True, "service": config.SERVICE_NAME,
                "workers": runtime.status() if runtime is not None else {}}

    @app.get("/resilience")
    def resilience_snapshot():
        return {
            "service": config.SERVICE_NAME,
            "roles": config.SERVICE_ROLES,
            "snapshot": get_snapshot(),
        }

    @app.get("/diag")
    def diag():
        """Chequeos rapidos de dependencias + snapshot."""
        db_ok, redis_ok = True, True
        db_err, redis_err = None, None
        try:
            app.state.store.ping()
        except Exception as e:
            db_ok, db_err = False, str(e)
        try:
            get_client().ping()
        except Exception as e:
            redis_ok, redis_err = False, str(e)
        return {
            "service": config.SERVICE_NAME,
            "dependencies": {
                "db_ok": db_ok, "db_error": db_err,
                "redis_ok": redis_ok, "redis_error": redis_err,
            },
            "snapshot": get_snapshot(),
        }

    app.include_router(notifications_router)
    return app


app = create_app()
