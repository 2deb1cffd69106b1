# notification_digest/store.py
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, NamedTuple, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .errors import RecordRejected, StoreUnavailable
from .models import Channel, NotificationEvent, NotificationRow, utcnow

logger = logging.getLogger(__name__)

_SENT_COLUMN = {
    Channel.IN_APP: NotificationRow.sent_in_app,
    Channel.EMAIL: NotificationRow.sent_email,
}


class PendingGroup(NamedTuple):
    type: str
    group_on: str
    newest_created_at: datetime
    count: int


class NotificationStore:
    """Persistence of individual notification rows and their read/sent state."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except OperationalError as e:
            session.rollback()
            raise StoreUnavailable(f"notification store unavailable: {e}") from e
        except (DataError, IntegrityError) as e:
            session.rollback()
            raise RecordRejected(f"notification store rejected the row: {e.orig}") from e
        except DBAPIError as e:
            session.rollback()
            if e.connection_invalidated:
                raise StoreUnavailable(f"notification store connection lost: {e}") from e
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert(self, event: NotificationEvent, created_at: Optional[datetime] = None) -> NotificationRow:
        row = NotificationRow(
            type=event.type.value,
            for_user_id=event.for_user_id,
            asset_id=event.asset_id,
            board_id=event.board_id,
            group_on=event.group_on,
            read=False,
            sent_in_app=False,
            sent_email=False,
            created_at=created_at or utcnow(),
        )
        with self._session() as session:
            session.add(row)
            session.flush()
            session.expunge(row)
        return row

    def select_unsent(self, notification_type: str, group_on: str, channel: Channel) -> List[NotificationRow]:
        """Unread rows of the group not yet sent on ``channel``."""
        sent = _SENT_COLUMN[Channel(channel)]
        stmt = (
            select(NotificationRow)
            .where(
                NotificationRow.type == notification_type,
                NotificationRow.group_on == group_on,
                sent.is_(False),
                NotificationRow.read.is_(False),
            )
            .order_by(NotificationRow.created_at, NotificationRow.id)
        )
        with self._session() as session:
            rows = list(session.scalars(stmt))
            session.expunge_all()
        return rows

    def mark_sent(self, row_ids: Iterable[str], channel: Channel) -> int:
        ids = list(row_ids)
        if not ids:
            return 0
        sent = _SENT_COLUMN[Channel(channel)]
        stmt = (
            update(NotificationRow)
            .where(NotificationRow.id.in_(ids), sent.is_(False))
            .values({sent.key: True})
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
        return result.rowcount

    def list_unread(self, user_id: str) -> List[NotificationRow]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.for_user_id == user_id, NotificationRow.read.is_(False))
            .order_by(NotificationRow.created_at, NotificationRow.id)
        )
        with self._session() as session:
            rows = list(session.scalars(stmt))
            session.expunge_all()
        return rows

    def mark_read(self, row_id: str, user_id: str) -> bool:
        """Marks one of the user's rows read. False if no such row for that user."""
        stmt = (
            update(NotificationRow)
            .where(NotificationRow.id == row_id, NotificationRow.for_user_id == user_id)
            .values(read=True)
            .execution_options(synchronize_session=False)
        )
        with self._session() as session:
            result = session.execute(stmt)
        return result.rowcount > 0

    def get(self, row_id: str) -> Optional[NotificationRow]:
        with self._session() as session:
            row = session.get(NotificationRow, row_id)
            if row is not None:
                session.expunge(row)
        return row

    def pending_groups(self, channel: Channel) -> List[PendingGroup]:
        """Groups that still hold unread rows not sent on ``channel``."""
        sent = _SENT_COLUMN[Channel(channel)]
        stmt = (
            select(
                NotificationRow.type,
                NotificationRow.group_on,
                func.max(NotificationRow.created_at),
                func.count(NotificationRow.id),
            )
            .where(sent.is_(False), NotificationRow.read.is_(False))
            .group_by(NotificationRow.type, NotificationRow.group_on)
            .order_by(NotificationRow.type, NotificationRow.group_on)
        )
        with self._session() as session:
            return [PendingGroup(t, g, newest, n) for t, g, newest, n in session.execute(stmt)]

    def ping(self):
        with self._session() as session:
            session.execute(select(1))
