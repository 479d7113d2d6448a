from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from gamemarket.core.auth import get_current_user_id
from gamemarket.database import get_db
from gamemarket.schemas.notification import (
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
)
from gamemarket.services import notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = False,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    items, total, unread = await notification_service.list_notifications(
        db, current_user, unread_only=unread_only, page=page, page_size=page_size
    )
    return NotificationListResponse(
        total=total,
        unread_count=unread,
        page=page,
        page_size=page_size,
        notifications=[NotificationResponse.model_validate(n) for n in items],
    )


@router.put("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    updated = await notification_service.mark_all_read(db, current_user)
    return MarkAllReadResponse(updated=updated)


@router.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    notification = await notification_service.mark_read(db, notification_id, current_user)
    return NotificationResponse.model_validate(notification)


@router.delete("/{notification_id}", status_code=204)
async def delete_notification(
    notification_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: str = Depends(get_current_user_id),
):
    await notification_service.delete_notification(db, notification_id, current_user)
    return Response(status_code=204)
