
from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
import logging

from ..errors import StoreUnavailable
from ..models import NotificationOut
from ..observability import log_fields
from ..store import NotificationStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notification", tags=["notifications"])


def get_store(request: Request) -> NotificationStore:
    return request.app.state.store


def current_user_id(x_user_id: str = Header(default="")) -> str:
    # la autenticacion la resuelve el gateway, que propaga x-user-id
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing x-user-id header")
    return x_user_id


@router.get("/unread", response_model=List[NotificationOut], response_model_by_alias=True)
def list_unread(user_id: str = Depends(current_user_id), store: NotificationStore = Depends(get_store)):
    try:
        rows = store.list_unread(user_id)
    except StoreUnavailable as e:
        logger.error(f"list_unread error: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notification store unavailable")
    return [NotificationOut.model_validate(r) for r in rows]


@router.put("/{notification_id}/read")
def mark_read(notification_id: str, user_id: str = Depends(current_user_id),
              store: NotificationStore = Depends(get_store)):
    try:
        updated = store.mark_read(notification_id, user_id)
    except StoreUnavailable as e:
        logger.error(f"mark_read error: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notification store unavailable")
    if not updated:
        # tambien cuando la fila es de otro usuario
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    logger.info("notification_marked_read", extra=log_fields(
        "notification_marked_read", notification_id=notification_id, user_id=user_id,
    ))
    return {"ok": True, "id": notification_id}
