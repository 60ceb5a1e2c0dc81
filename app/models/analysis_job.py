"""Admitted analysis attempts: processing -> done | failed."""
from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .profile import utcnow


class AnalysisJob(SQLModel, table=True):
    __tablename__ = "analysis_jobs"
    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="profile.id", index=True)
    status: str = "processing"  # processing | done | failed
    source: str = "base64"  # base64 | url
    food_name: str | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    updated_at: datetime | None = Field(default_factory=utcnow, sa_type=DateTime())
