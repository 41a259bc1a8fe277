"""
Users API Router

Minimal user profile endpoints. Workflows address users by id or email,
so profiles must exist before notifications can reach them.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime

from database import get_db
from services.user_service import UserService

router = APIRouter(prefix="/api/users", tags=["users"])


class UserCreate(BaseModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "user"


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    role: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=List[UserResponse])
async def list_users(limit: int = 100, offset: int = 0, db: Session = Depends(get_db)):
    return UserService(db).list_users(limit=limit, offset=offset)


@router.post("", response_model=UserResponse)
async def create_user(request: UserCreate, db: Session = Depends(get_db)):
    try:
        return UserService(db).create_user(
            email=request.email,
            first_name=request.first_name,
            last_name=request.last_name,
            role=request.role
        )
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail=f"User with email {request.email} already exists")


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, db: Session = Depends(get_db)):
    user = UserService(db).get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
