from .analysis_job import AnalysisJob
from .billing_event import BillingEvent
from .error_log import ErrorLog
from .profile import Profile, SubscriptionStatus, SubscriptionTier, utcnow
from .security_log import SecurityLog

__all__ = [
    "AnalysisJob",
    "BillingEvent",
    "ErrorLog",
    "Profile",
    "SecurityLog",
    "SubscriptionStatus",
    "SubscriptionTier",
    "utcnow",
]
