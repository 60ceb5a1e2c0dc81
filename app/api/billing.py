import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel import Session

from app.api.deps import get_profile_or_404
from app.core.database import get_db
from app.core.rate_limit import client_ip
from app.models import SecurityLog
from app.schemas import CheckoutRequest, CheckoutResponse, WebhookAck
from app.services.billing import BillingNotConfigured, InvalidSignature, create_checkout_session, handle_webhook, verify_event

log = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["billing"])


@router.post("/checkout", response_model=CheckoutResponse)
def checkout(
    body: CheckoutRequest,
    db: Session = Depends(get_db),
):
    """Stripe checkout for Pro; returns the redirect URL. Pro is granted by the webhook after payment."""
    profile = get_profile_or_404(db, body.user_id)
    try:
        session_id, url = create_checkout_session(db, profile, body.success_url, body.cancel_url)
    except BillingNotConfigured:
        raise HTTPException(status_code=503, detail="Payments are not available right now.")
    except stripe.StripeError as e:
        log.exception("Stripe checkout error: user_id=%s %s", body.user_id, e)
        raise HTTPException(status_code=502, detail="Failed to create checkout session")
    return CheckoutResponse(session_id=session_id, url=url)


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe events. 400 on a bad signature (nothing applied); otherwise 200 even if no profile matched."""
    payload = await request.body()
    try:
        event = verify_event(payload, request.headers.get("stripe-signature"))
    except InvalidSignature as e:
        log.warning("Stripe webhook signature verification failed: %s", e)
        db.add(SecurityLog(event="invalid_signature", ip=client_ip(request), endpoint=request.url.path, detail=str(e)[:500]))
        db.commit()
        raise HTTPException(status_code=400, detail="Invalid signature")
    handle_webhook(db, event)
    return WebhookAck(received=True)
