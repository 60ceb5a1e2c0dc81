from pydantic import BaseModel


class CheckoutRequest(BaseModel):
    """Opens a Stripe checkout for the Pro subscription; the webhook grants Pro after payment."""
    user_id: str
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: str | None = None


class WebhookAck(BaseModel):
    received: bool = True
