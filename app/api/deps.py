from fastapi import Depends, HTTPException
from sqlmodel import Session

from app.core.database import get_db
from app.models import Profile


def get_profile_or_404(db: Session, user_id: str) -> Profile:
    profile = db.get(Profile, user_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found. Please sign in again.")
    return profile


def get_profile(
    user_id: str,
    db: Session = Depends(get_db),
) -> Profile:
    """user_id query parameter -> Profile."""
    return get_profile_or_404(db, user_id)
