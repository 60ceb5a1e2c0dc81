"""Per-user profile: subscription tier/status, analysis counter, Stripe identifiers."""
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime
from sqlmodel import Field, SQLModel

from app.core.config import settings


class SubscriptionTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    NONE = "none"


def utcnow() -> datetime:
    """Naive UTC now (the database stores naive UTC timestamps)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _first_reset_at() -> datetime:
    return utcnow() + timedelta(days=settings.analyses_period_days)


class Profile(SQLModel, table=True):
    __table_args__ = (CheckConstraint("analyses_count >= 0", name="ck_profile_analyses_count_non_negative"),)

    id: str = Field(primary_key=True)  # auth provider user id
    email: str | None = None
    name: str | None = None
    subscription_tier: str = SubscriptionTier.FREE.value  # "free" | "pro"; only the tier gates quota
    subscription_status: str = SubscriptionStatus.NONE.value  # "active" | "past_due" | "cancelled" | "none"
    # Gate-owned fields
    analyses_count: int = Field(default=0, ge=0)
    analyses_reset_at: datetime = Field(default_factory=_first_reset_at, sa_type=DateTime())
    # Billing-owned fields (webhook)
    stripe_customer_id: str | None = Field(default=None, index=True)
    stripe_subscription_id: str | None = None
    subscription_current_period_end: datetime | None = Field(default=None, sa_type=DateTime())
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
    updated_at: datetime | None = Field(default_factory=utcnow, sa_type=DateTime())
