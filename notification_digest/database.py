import os
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

DB_HOST = os.getenv("DB_HOST", "postgres-notifications")
DB_PORT = int(os.getenv("DB_PORT", "5432"))
DB_NAME = os.getenv("DB_NAME", "notifications")
DB_USER = os.getenv("DB_USER", "digest")
DB_PASSWORD = os.getenv("DB_PASSWORD", "digest123")

# Timeouts (env-configurables)
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "2"))                # segundos
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "2000"))   # milisegundos

DATABASE_URL = os.getenv("DATABASE_URL") or (
    f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
)

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # in-memory sqlite necesita una sola conexion compartida entre threads
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    engine = create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"connect_timeout": DB_CONNECT_TIMEOUT},
    )

    # Aplica statement_timeout en cada conexion
    @event.listens_for(engine, "connect")
    def set_psql_timeouts(dbapi_conn, connection_record):
        with dbapi_conn.cursor() as cur:
            cur.execute(f"SET SESSION statement_timeout = {DB_STATEMENT_TIMEOUT_MS}")

    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(DATABASE_URL)
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _session_factory


def init_db(engine: Optional[Engine] = None):
    from . import models  # noqa: F401  ensure model import
    Base.metadata.create_all(bind=engine or get_engine())
