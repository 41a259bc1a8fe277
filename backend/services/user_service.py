"""
User Service

Lookups over user profiles. Several places store a user either by id or by
email, so resolving both forms lives here.
"""

import re
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models import UserProfile

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and isinstance(value, str) and bool(UUID_PATTERN.match(value))


class UserService:
    """Service for user profile lookups."""

    def __init__(self, db: Session):
        self.db = db

    def create_user(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        role: str = "user"
    ) -> UserProfile:
        user = UserProfile(
            email=email.strip().lower(),
            first_name=first_name,
            last_name=last_name,
            role=role
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        logger.info(f"Created user {user.id} ({user.email})")
        return user

    def list_users(self, limit: int = 100, offset: int = 0) -> List[UserProfile]:
        return self.db.query(UserProfile).order_by(UserProfile.email).offset(offset).limit(limit).all()

    def get_user(self, user_id: Optional[str]) -> Optional[UserProfile]:
        if not user_id:
            return None
        return self.db.query(UserProfile).filter(UserProfile.id == user_id).first()

    def get_user_by_email(self, email: Optional[str]) -> Optional[UserProfile]:
        if not email or not isinstance(email, str):
            return None
        return self.db.query(UserProfile).filter(
            func.lower(UserProfile.email) == email.strip().lower()
        ).first()

    def get_email(self, user_id: Optional[str]) -> Optional[str]:
        user = self.get_user(user_id)
        return user.email if user else None

    def resolve_user_id(self, value: Optional[str]) -> Optional[str]:
        """Accept a user id or an email and return the user id (or None)."""
        if not value:
            return None
        if is_uuid(value):
            return value
        user = self.get_user_by_email(value)
        return user.id if user else None
