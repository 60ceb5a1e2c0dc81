"""
Usage metering for food analyses.

Two steps per request:
- check_and_reserve(): rolls the counting period over if it has ended and decides allow/deny.
  It never increments the counter.
- commit_analysis(): called only after the vision model answered; increments the counter with a
  conditional UPDATE against the stored value, so concurrent requests cannot push a free
  profile past its limit.
The gate writes analyses_count / analyses_reset_at only; tier and status belong to billing.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import or_, update
from sqlmodel import Session

from app.core.config import settings
from app.models import Profile, SubscriptionTier, utcnow

logger = logging.getLogger(__name__)

FREE_LIMIT = settings.free_tier_limit
PERIOD = timedelta(days=settings.analyses_period_days)


class ProfileNotFound(Exception):
    def __init__(self, user_id: str):
        super().__init__(f"Profile not found: {user_id}")
        self.user_id = user_id


class DenialReason(str, Enum):
    LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    tier: str
    analyses_count: int
    resets_at: datetime
    limit: int | None = None  # None: unlimited (pro)
    reason: DenialReason | None = None

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(self.limit - self.analyses_count, 0)


def limit_for(tier: str | None) -> int | None:
    """Analysis limit per period by tier. Anything that is not pro is metered."""
    return None if tier == SubscriptionTier.PRO else FREE_LIMIT


def _evaluate(tier: str, count: int, resets_at: datetime) -> Decision:
    limit = limit_for(tier)
    if limit is not None and count >= limit:
        return Decision(
            allowed=False,
            tier=tier,
            analyses_count=count,
            resets_at=resets_at,
            limit=limit,
            reason=DenialReason.LIMIT_REACHED,
        )
    return Decision(allowed=True, tier=tier, analyses_count=count, resets_at=resets_at, limit=limit)


def _reset_period(db: Session, profile: Profile, now: datetime) -> datetime:
    """Starts a new period at now. Compare-and-set on the old boundary: a concurrent reset wins once."""
    new_reset_at = now + PERIOD
    stmt = (
        update(Profile)
        .where(Profile.id == profile.id, Profile.analyses_reset_at == profile.analyses_reset_at)
        .values(analyses_count=0, analyses_reset_at=new_reset_at)
        .execution_options(synchronize_session=False)
    )
    result = db.exec(stmt)
    db.commit()
    if result.rowcount:
        logger.info("Analysis period reset: user_id=%s next_reset=%s", profile.id, new_reset_at.isoformat())
    else:
        logger.info("Analysis period already reset by a concurrent request: user_id=%s", profile.id)
    return new_reset_at


def check_and_reserve(db: Session, user_id: str, now: datetime | None = None) -> Decision:
    """
    Decides whether user_id may run one analysis now.

    now is naive UTC (defaults to the current time). Raises ProfileNotFound.
    A reset is persisted when now > analyses_reset_at; the decision then uses the
    refreshed values without reading the row again.
    """
    profile = db.get(Profile, user_id)
    if profile is None:
        raise ProfileNotFound(user_id)
    now = now or utcnow()
    tier = profile.subscription_tier
    count = profile.analyses_count or 0
    resets_at = profile.analyses_reset_at
    if now > resets_at:
        resets_at = _reset_period(db, profile, now)
        count = 0
    decision = _evaluate(tier, count, resets_at)
    if not decision.allowed:
        logger.info("Analysis denied, limit reached: user_id=%s used=%s/%s", user_id, count, decision.limit)
    return decision


def commit_analysis(db: Session, user_id: str) -> bool:
    """
    Consumes one analysis after a successful inference.

    analyses_count = analyses_count + 1 in the database, guarded by the tier/limit condition.
    Returns False when a concurrent commit already used the last free analysis.
    """
    stmt = (
        update(Profile)
        .where(Profile.id == user_id)
        .where(or_(Profile.subscription_tier == SubscriptionTier.PRO.value, Profile.analyses_count < FREE_LIMIT))
        .values(analyses_count=Profile.analyses_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.exec(stmt)
    db.commit()
    if result.rowcount:
        return True
    if db.get(Profile, user_id) is None:
        raise ProfileNotFound(user_id)
    logger.warning("Analysis commit refused, free limit already used: user_id=%s", user_id)
    return False


def usage_summary(profile: Profile, now: datetime | None = None) -> Decision:
    """Read-only view of the current period; an ended period reads as unused without writing."""
    now = now or utcnow()
    count = profile.analyses_count or 0
    resets_at = profile.analyses_reset_at
    if now > resets_at:
        count, resets_at = 0, now + PERIOD
    return _evaluate(profile.subscription_tier, count, resets_at)
