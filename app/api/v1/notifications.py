from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import get_db
from app.models.common import utcnow
from app.schemas.notification import MutationOut, NotificationPageOut, UnreadCountOut
from app.services import notifications as notification_service
from app.services.auth import AuthSession, get_current_session

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationPageOut)
async def list_notifications(
    page: int = Query(default=0, ge=0),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
) -> NotificationPageOut:
    size = limit or settings.notifications_page_size
    items = await notification_service.select_page(db, session.user_id, limit=size, offset=page * size)
    return NotificationPageOut(items=items, page=page, has_more=len(items) == size)


@router.get("/unread-count", response_model=UnreadCountOut)
async def unread_count(
    db: AsyncSession = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
) -> UnreadCountOut:
    count = await notification_service.select_unread_count(db, session.user_id)
    return UnreadCountOut(count=count)


@router.post("/read-all", response_model=MutationOut)
async def mark_all_notifications_read(
    db: AsyncSession = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
) -> MutationOut:
    affected = await notification_service.update_read_at_bulk(db, session.user_id, utcnow())
    return MutationOut(affected=affected)


@router.post("/{notification_id}/read", response_model=MutationOut)
async def mark_notification_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
) -> MutationOut:
    # Zero rows means it was already read; that is not an error.
    affected = await notification_service.update_read_at(db, session.user_id, notification_id, utcnow())
    return MutationOut(affected=affected)


@router.delete("/{notification_id}", response_model=MutationOut)
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    session: AuthSession = Depends(get_current_session),
) -> MutationOut:
    affected = await notification_service.update_deleted(db, session.user_id, notification_id)
    if not affected:
        raise HTTPException(status_code=404, detail="Notification not found")
    return MutationOut(affected=affected)
