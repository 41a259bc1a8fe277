"""
Notification Service

Creates and reads in-app notifications.
"""

from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import desc
from datetime import datetime
import logging

from models import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Service for in-app notifications."""

    def __init__(self, db: Session):
        self.db = db

    def create_notification(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> Notification:
        """Create a notification for a user."""
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data or {},
            read=False
        )
        self.db.add(notification)
        if commit:
            self.db.commit()
            self.db.refresh(notification)
        else:
            self.db.flush()
        logger.info(f"Created {type} notification {notification.id} for user {user_id}")
        return notification

    def list_notifications(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0
    ) -> List[Notification]:
        """List a user's notifications, newest first."""
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.read == False)
        return query.order_by(desc(Notification.created_at)).offset(offset).limit(limit).all()

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        return self.db.query(Notification).filter(Notification.id == notification_id).first()

    def mark_read(self, notification_id: str) -> Optional[Notification]:
        """Mark a single notification as read."""
        notification = self.get_notification(notification_id)
        if not notification:
            return None
        notification.read = True
        notification.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of a user as read. Returns the count."""
        count = self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.read == False
        ).update({"read": True, "updated_at": datetime.utcnow()}, synchronize_session=False)
        self.db.commit()
        return count
