from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
from uuid import UUID
import math

from app.database import get_db
from app.models import Notification
from app.db_helpers import get_user_id
from app.schemas import NotificationListResponse, NotificationResponse, PaginationMeta
from app.services.notification_service import NotificationService

router = APIRouter()


def _get_owned_notification(db: Session, notification_id, user_id: str) -> Notification:
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id
    ).first()
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.get("/", response_model=NotificationListResponse)
def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    category: Optional[str] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List notifications, newest first."""
    user_id = get_user_id(user_id)
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read == False)  # noqa: E712
    if category:
        query = query.filter(Notification.category == category)

    total = query.count()
    notifications = query.order_by(
        Notification.created_at.desc()
    ).offset((page - 1) * limit).limit(limit).all()

    total_pages = math.ceil(total / limit) if total else 0
    return NotificationListResponse(
        data=[NotificationResponse.model_validate(n) for n in notifications],
        meta=PaginationMeta(
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )


@router.get("/stats")
def get_notification_stats(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Totals by type and category."""
    user_id = get_user_id(user_id)
    return NotificationService(db).stats(user_id)


@router.get("/unread-count")
def get_unread_count(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Number of unread notifications."""
    user_id = get_user_id(user_id)
    return {"unread": NotificationService(db).unread_count(user_id)}


@router.patch("/read-all")
def mark_all_read(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Mark every unread notification as read."""
    user_id = get_user_id(user_id)
    updated = NotificationService(db).mark_all_read(user_id)
    return {"updated": updated}


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
def mark_read(
    notification_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Mark one notification as read."""
    user_id = get_user_id(user_id)
    notification = _get_owned_notification(db, notification_id, user_id)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.utcnow()
        db.commit()
        db.refresh(notification)
    return notification


@router.delete("/", status_code=200)
def clear_read_notifications(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete all notifications that have been read."""
    user_id = get_user_id(user_id)
    deleted = db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read == True,  # noqa: E712
    ).delete(synchronize_session=False)
    db.commit()
    return {"deleted": deleted}


@router.delete("/{notification_id}", status_code=204)
def delete_notification(
    notification_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete a notification."""
    user_id = get_user_id(user_id)
    notification = _get_owned_notification(db, notification_id, user_id)
    db.delete(notification)
    db.commit()
    return None
