from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .profile import utcnow


class BillingEvent(SQLModel, table=True):
    """Processed Stripe events: a redelivered event id is acknowledged without being applied again."""

    __tablename__ = "billing_events"
    id: int | None = Field(default=None, primary_key=True)
    stripe_event_id: str = Field(unique=True, index=True)
    event_type: str
    profile_id: str | None = Field(default=None, index=True)
    applied: bool = False  # False: acknowledged, no profile matched or type unhandled
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime())
