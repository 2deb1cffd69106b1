# notification_digest/services/outbox.py
from datetime import datetime
from typing import List, NamedTuple, Optional

from sqlalchemy import DateTime, Integer, String, Text, delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, sessionmaker

from ..config import OUTBOX_URL
from ..database import make_engine
from ..models import FlushMessage, utcnow

OutboxBase = declarative_base()


class OutboxEntry(OutboxBase):
    __tablename__ = "flush_outbox"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    debounce_key: Mapped[str] = mapped_column(String(512), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class PendingFlush(NamedTuple):
    id: int
    message: FlushMessage
    attempts: int


class FlushOutbox:
    """
    Local durable record of flushes received but not yet confirmed on the bus.
    Lives on the listener's own disk, separate from the notification store.
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            engine = make_engine(url or OUTBOX_URL)
        self.engine = engine
        OutboxBase.metadata.create_all(bind=engine)
        self._session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def add(self, msg: FlushMessage) -> int:
        entry = OutboxEntry(
            debounce_key=msg.debounce_key,
            payload=msg.model_dump_json(by_alias=True),
        )
        with self._session_factory() as session:
            session.add(entry)
            session.commit()
            return entry.id

    def remove(self, entry_id: int):
        with self._session_factory() as session:
            session.execute(delete(OutboxEntry).where(OutboxEntry.id == entry_id))
            session.commit()

    def record_attempt(self, entry_id: int):
        with self._session_factory() as session:
            entry = session.get(OutboxEntry, entry_id)
            if entry is not None:
                entry.attempts += 1
                session.commit()

    def pending(self, limit: int = 100) -> List[PendingFlush]:
        stmt = select(OutboxEntry).order_by(OutboxEntry.id).limit(limit)
        with self._session_factory() as session:
            return [
                PendingFlush(e.id, FlushMessage.model_validate_json(e.payload), e.attempts)
                for e in session.scalars(stmt)
            ]

    def count(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count(OutboxEntry.id))) or 0
