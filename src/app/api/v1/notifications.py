"""REST API endpoints for the caller's notifications."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from src.app.api.deps import get_current_user_id, get_platform_repository
from src.app.platform.schemas import NotificationRead, NotificationUpdate

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    request: Request,
    unread_only: bool = Query(False, alias="unreadOnly"),
    user_id: str = Depends(get_current_user_id),
) -> list[NotificationRead]:
    """List the caller's notifications, newest first."""
    repo = get_platform_repository(request)
    where: dict = {"user_id": user_id}
    if unread_only:
        where["is_read"] = False
    return await repo.notifications.find_many(where=where, order_by={"created_at": "desc"})


@router.patch("/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> NotificationRead:
    """Mark one of the caller's notifications as read."""
    repo = get_platform_repository(request)
    notification = await repo.notifications.find_first({"id": notification_id})
    if notification is None or notification.user_id != user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        )
    return await repo.notifications.update(
        {"id": notification_id}, NotificationUpdate(is_read=True)
    )
