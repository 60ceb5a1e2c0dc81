from .analyze import AnalyzeRequest, AnalyzeResponse, NutritionEstimate, UsageResponse
from .billing import CheckoutRequest, CheckoutResponse, WebhookAck

__all__ = [
    "AnalyzeRequest",
    "AnalyzeResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "NutritionEstimate",
    "UsageResponse",
    "WebhookAck",
]
