"""Table definitions: naive UTC timestamps stored as plain DateTime."""
from datetime import timedelta

import pytest
from sqlalchemy import DateTime
from sqlmodel import Session

from app.models import AnalysisJob, BillingEvent, ErrorLog, Profile, SecurityLog, utcnow


@pytest.mark.parametrize(
    "table, column",
    [
        (Profile, "analyses_reset_at"),
        (Profile, "subscription_current_period_end"),
        (Profile, "created_at"),
        (Profile, "updated_at"),
        (AnalysisJob, "created_at"),
        (AnalysisJob, "updated_at"),
        (BillingEvent, "created_at"),
        (SecurityLog, "created_at"),
        (ErrorLog, "created_at"),
    ],
)
def test_timestamp_columns_are_naive(table, column):
    col_type = table.__table__.c[column].type
    assert type(col_type) is DateTime
    assert col_type.timezone is False


def test_period_end_nullable():
    assert Profile.__table__.c["subscription_current_period_end"].nullable
    assert not Profile.__table__.c["analyses_reset_at"].nullable


def test_naive_timestamps_round_trip(db: Session, make_profile, fetch_profile):
    end = utcnow() + timedelta(days=5)
    make_profile(analyses_reset_at=end, subscription_current_period_end=end)
    p = fetch_profile()
    assert p.analyses_reset_at == end
    assert p.subscription_current_period_end == end
    assert p.created_at.tzinfo is None
    db.add(BillingEvent(stripe_event_id="evt_1", event_type="invoice.paid"))
    db.add(SecurityLog(event="rate_limit"))
    db.add(ErrorLog(endpoint="/analyze"))
    db.add(AnalysisJob(user_id="user-1"))
    db.commit()
