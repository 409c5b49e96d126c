from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

import bcrypt

from app.database import get_db
from app.models import User
from app.db_helpers import get_or_create_user, get_user_id
from app.schemas import UserProfileUpdate, UserResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


@router.get("/me", response_model=UserResponse)
def get_profile(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get the authenticated user's profile."""
    user_id = get_user_id(user_id)
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.put("/me", response_model=UserResponse)
def update_profile(
    updates: UserProfileUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Create or update the authenticated user's profile.

    The password, when provided, is stored as a bcrypt hash.
    """
    user_id = get_user_id(user_id)
    user = get_or_create_user(db, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    email = update_data.get("email")
    if email:
        email = email.strip().lower()
        taken = db.query(User.id).filter(User.email == email, User.id != user_id).first()
        if taken:
            raise HTTPException(status_code=400, detail="Email is already in use")
        update_data["email"] = email

    password = update_data.pop("password", None)
    if password:
        user.password_hash = hash_password(password)

    if update_data.get("currency"):
        update_data["currency"] = update_data["currency"].upper()

    for field, value in update_data.items():
        if value is not None:
            setattr(user, field, value)

    db.commit()
    db.refresh(user)
    logger.info(f"Updated profile for user {user_id}")
    return user
