"""
Notifications API Router

Endpoints for reading in-app notifications and marking them read.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging

from database import get_db
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# =============================================================================
# Request/Response Models
# =============================================================================

class NotificationCreate(BaseModel):
    user_id: str
    type: str = "info"
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]]
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


# =============================================================================
# Endpoints
# =============================================================================

@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db)
):
    """List a user's notifications, newest first."""
    return NotificationService(db).list_notifications(
        user_id, unread_only=unread_only, limit=limit, offset=offset
    )


@router.post("", response_model=NotificationResponse)
async def create_notification(request: NotificationCreate, db: Session = Depends(get_db)):
    return NotificationService(db).create_notification(
        user_id=request.user_id,
        type=request.type,
        title=request.title,
        message=request.message,
        data=request.data
    )


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: str, db: Session = Depends(get_db)):
    notification = NotificationService(db).mark_read(notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.post("/read-all")
async def mark_all_read(user_id: str, db: Session = Depends(get_db)):
    count = NotificationService(db).mark_all_read(user_id)
    return {"status": "ok", "updated": count}
