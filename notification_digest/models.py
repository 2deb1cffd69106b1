
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


ID_MAX_LENGTH = 128
# la clave debounce:<type>:<channel>:<groupOn> completa no supera 256
GROUP_ON_MAX_LENGTH = 256 - len("debounce:assetCommented:inApp:")


class NotificationType(str, Enum):
    ASSET_UPLOADED = "assetUploaded"
    ASSET_VIEWED = "assetViewed"
    ASSET_COMMENTED = "assetCommented"


class Channel(str, Enum):
    IN_APP = "inApp"
    EMAIL = "email"


# SQLAlchemy model
class NotificationRow(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_group", "type", "group_on"),
        Index("ix_notifications_user_read", "for_user_id", "read"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=lambda: uuid.uuid4().hex)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    for_user_id: Mapped[str] = mapped_column(String(ID_MAX_LENGTH), nullable=False)
    asset_id: Mapped[Optional[str]] = mapped_column(String(ID_MAX_LENGTH), nullable=True)
    board_id: Mapped[Optional[str]] = mapped_column(String(ID_MAX_LENGTH), nullable=True)
    group_on: Mapped[str] = mapped_column(String(GROUP_ON_MAX_LENGTH), nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_in_app: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sent_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<NotificationRow {self.id} {self.type} user={self.for_user_id} group={self.group_on}>"


# Pydantic models (wire format en camelCase)
class NotificationEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: NotificationType
    for_user_id: str = Field(alias="forUserId", min_length=1, max_length=ID_MAX_LENGTH)
    asset_id: Optional[str] = Field(default=None, alias="assetId", max_length=ID_MAX_LENGTH)
    board_id: Optional[str] = Field(default=None, alias="boardId", max_length=ID_MAX_LENGTH)
    group_on: Optional[str] = Field(default=None, alias="groupOn", max_length=GROUP_ON_MAX_LENGTH)
    occurred_at: datetime = Field(default_factory=utcnow, alias="occurredAt")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")

    @model_validator(mode="before")
    @classmethod
    def resolve_target(cls, data):
        if not isinstance(data, dict):
            return data
        data = {k: v for k, v in data.items() if v not in ("", None)}
        asset_id = data.get("assetId", data.get("asset_id"))
        board_id = data.get("boardId", data.get("board_id"))
        if not asset_id and not board_id:
            raise ValueError("event must carry assetId or boardId")
        if asset_id and board_id:
            # un asset siempre pertenece a un board: el board es derivable
            data.pop("boardId", None)
            data.pop("board_id", None)
        if not data.get("groupOn") and not data.get("group_on"):
            data["groupOn"] = asset_id or board_id
        return data


class FlushMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    debounce_key: str = Field(alias="debounceKey", min_length=1)
    fired_at: datetime = Field(default_factory=utcnow, alias="firedAt")
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")


class DigestRow(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    type: str
    asset_id: Optional[str] = Field(default=None, alias="assetId")
    board_id: Optional[str] = Field(default=None, alias="boardId")
    created_at: datetime = Field(alias="createdAt")


class EmailDigestEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    for_user_id: str = Field(alias="forUserId")
    type: str
    group_on: str = Field(alias="groupOn")
    subject: str
    rows: List[DigestRow]
    correlation_id: Optional[str] = Field(default=None, alias="correlationId")


class NotificationOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    id: str
    type: str
    for_user_id: str = Field(alias="forUserId")
    asset_id: Optional[str] = Field(default=None, alias="assetId")
    board_id: Optional[str] = Field(default=None, alias="boardId")
    group_on: str = Field(alias="groupOn")
    read: bool
    sent_in_app: bool = Field(alias="sentInApp")
    sent_email: bool = Field(alias="sentEmail")
    created_at: datetime = Field(alias="createdAt")
