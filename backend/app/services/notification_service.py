"""
Notification service: persists notifications and pushes them to connected clients.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import Notification
from app.services.event_publisher import EventPublisher, get_event_publisher

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = {"info", "success", "warning", "error"}
NOTIFICATION_CATEGORIES = {"goal", "recurring", "subscription", "investment", "anomaly", "system"}


def serialize_notification(notification: Notification) -> dict:
    return {
        "id": str(notification.id),
        "title": notification.title,
        "message": notification.message,
        "type": notification.type,
        "category": notification.category,
        "link": notification.link,
        "data": notification.data,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


class NotificationService:
    """
    Creates notifications and manages their read state.

    The caller owns the session transaction: notify() flushes but does not
    commit, so a notification is persisted together with the change that
    caused it. The Redis push happens after flush and is best-effort.
    """

    def __init__(self, db: Session, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher or get_event_publisher()

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        notification_type: str = "info",
        category: str = "system",
        link: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unsupported notification type: {notification_type}")
        if category not in NOTIFICATION_CATEGORIES:
            raise ValueError(f"Unsupported notification category: {category}")

        notification = Notification(
            user_id=user_id,
            title=title,
            message=message,
            type=notification_type,
            category=category,
            link=link,
            data=data,
            created_at=datetime.utcnow(),
        )
        self.db.add(notification)
        self.db.flush()

        self.publisher.publish_notification(user_id, serialize_notification(notification))
        logger.info(f"Notification created for user {user_id}: {category}/{title}")
        return notification

    def unread_count(self, user_id: str) -> int:
        return self.db.query(func.count(Notification.id)).filter(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        ).scalar() or 0

    def mark_all_read(self, user_id: str) -> int:
        updated = self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        ).update(
            {Notification.is_read: True, Notification.read_at: datetime.utcnow()},
            synchronize_session=False,
        )
        self.db.commit()
        self.publisher.publish_unread_count(user_id, 0)
        return updated

    def stats(self, user_id: str) -> dict:
        rows = self.db.query(
            Notification.type,
            Notification.category,
            Notification.is_read,
            func.count(Notification.id),
        ).filter(
            Notification.user_id == user_id
        ).group_by(
            Notification.type, Notification.category, Notification.is_read
        ).all()

        by_type: Dict[str, int] = {}
        by_category: Dict[str, int] = {}
        total = 0
        unread = 0
        for notif_type, category, is_read, count in rows:
            total += count
            if not is_read:
                unread += count
            by_type[notif_type] = by_type.get(notif_type, 0) + count
            by_category[category] = by_category.get(category, 0) + count

        return {
            "total": total,
            "unread": unread,
            "by_type": by_type,
            "by_category": by_category,
        }
