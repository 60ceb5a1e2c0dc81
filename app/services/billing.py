"""
Stripe billing: checkout sessions and webhook events.

Webhook flow: verify_event() -> parse_event() -> apply_event().
Events are parsed into a closed set of variants and applied by one match statement.
Billing writes tier / status / Stripe identifier fields only; the analysis counter belongs to the gate.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import stripe
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.config import settings
from app.models import BillingEvent, Profile, SubscriptionStatus, SubscriptionTier, utcnow

logger = logging.getLogger(__name__)

# Stripe subscription status -> profile status. Missing keys leave the stored status unchanged.
STRIPE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


class InvalidSignature(Exception):
    pass


class BillingNotConfigured(Exception):
    pass


@dataclass(frozen=True)
class CheckoutCompleted:
    user_id: str | None
    customer_id: str | None
    subscription_id: str | None
    period_end: datetime | None


@dataclass(frozen=True)
class SubscriptionUpdated:
    customer_id: str | None
    status: str | None
    period_end: datetime | None


@dataclass(frozen=True)
class SubscriptionDeleted:
    customer_id: str | None


@dataclass(frozen=True)
class PaymentFailed:
    customer_id: str | None


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str


WebhookEvent = CheckoutCompleted | SubscriptionUpdated | SubscriptionDeleted | PaymentFailed | UnhandledEvent


def _from_timestamp(value) -> datetime | None:
    """Stripe epoch seconds -> naive UTC datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _customer_id(obj: dict) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def verify_event(payload: bytes | str, signature_header: str | None, secret: str | None = None) -> dict:
    """
    Checks the Stripe-Signature header and decodes the event.
    Raises InvalidSignature on any failure; nothing is applied before this passes.
    """
    secret = secret if secret is not None else settings.stripe_webhook_secret
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature("Payload is not UTF-8") from e
    if not secret or not signature_header:
        raise InvalidSignature("Missing signature or webhook secret")
    try:
        stripe.WebhookSignature.verify_header(payload, signature_header, secret, stripe.Webhook.DEFAULT_TOLERANCE)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(str(e)) from e
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise InvalidSignature("Invalid payload") from e
    if not isinstance(event, dict) or not event.get("type"):
        raise InvalidSignature("Invalid payload")
    return event


def fetch_subscription_period_end(subscription_id: str) -> datetime | None:
    """current_period_end of a Stripe subscription (on the first item for newer API versions)."""
    subscription = stripe.Subscription.retrieve(subscription_id, api_key=settings.stripe_secret_key)
    period_end = getattr(subscription, "current_period_end", None)
    if period_end is None:
        try:
            items = subscription["items"]["data"]
        except (KeyError, TypeError):
            items = []
        if items:
            period_end = getattr(items[0], "current_period_end", None)
    return _from_timestamp(period_end)


def parse_event(event: dict) -> WebhookEvent:
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    match event_type:
        case "checkout.session.completed":
            metadata = obj.get("metadata") or {}
            subscription_id = obj.get("subscription")
            if isinstance(subscription_id, dict):
                subscription_id = subscription_id.get("id")
            period_end = fetch_subscription_period_end(subscription_id) if subscription_id else None
            return CheckoutCompleted(
                user_id=metadata.get("user_id") or obj.get("client_reference_id"),
                customer_id=_customer_id(obj),
                subscription_id=subscription_id,
                period_end=period_end,
            )
        case "customer.subscription.updated":
            period_end = obj.get("current_period_end")
            if period_end is None:
                items = (obj.get("items") or {}).get("data") or []
                period_end = items[0].get("current_period_end") if items else None
            return SubscriptionUpdated(
                customer_id=_customer_id(obj),
                status=obj.get("status"),
                period_end=_from_timestamp(period_end),
            )
        case "customer.subscription.deleted":
            return SubscriptionDeleted(customer_id=_customer_id(obj))
        case "invoice.payment_failed":
            return PaymentFailed(customer_id=_customer_id(obj))
        case _:
            return UnhandledEvent(event_type=event_type)


def _profile_by_customer(db: Session, customer_id: str | None) -> Profile | None:
    if not customer_id:
        return None
    return db.exec(select(Profile).where(Profile.stripe_customer_id == customer_id)).first()


def _save(db: Session, profile: Profile) -> None:
    profile.updated_at = utcnow()
    db.add(profile)
    db.commit()


def apply_event(db: Session, event: WebhookEvent) -> Profile | None:
    """Applies one billing event. Returns the mutated profile, or None when nothing matched."""
    match event:
        case CheckoutCompleted(user_id=user_id, customer_id=customer_id, subscription_id=subscription_id, period_end=period_end):
            profile = db.get(Profile, user_id) if user_id else None
            if profile is None:
                logger.warning("Checkout completed for unknown user: user_id=%s", user_id)
                return None
            profile.subscription_tier = SubscriptionTier.PRO.value
            profile.subscription_status = SubscriptionStatus.ACTIVE.value
            profile.stripe_subscription_id = subscription_id
            profile.subscription_current_period_end = period_end
            if customer_id:
                profile.stripe_customer_id = customer_id
            _save(db, profile)
            logger.info("Subscription activated: user_id=%s subscription=%s", profile.id, subscription_id)
            return profile
        case SubscriptionUpdated(customer_id=customer_id, status=status, period_end=period_end):
            profile = _profile_by_customer(db, customer_id)
            if profile is None:
                return None
            mapped = STRIPE_STATUS_MAP.get(status or "")
            if mapped is None:
                logger.warning("Unknown Stripe subscription status %r, status kept: user_id=%s", status, profile.id)
            else:
                profile.subscription_status = mapped.value
            if period_end is not None:
                profile.subscription_current_period_end = period_end
            _save(db, profile)
            logger.info("Subscription updated: user_id=%s status=%s", profile.id, profile.subscription_status)
            return profile
        case SubscriptionDeleted(customer_id=customer_id):
            profile = _profile_by_customer(db, customer_id)
            if profile is None:
                return None
            profile.subscription_tier = SubscriptionTier.FREE.value
            profile.subscription_status = SubscriptionStatus.CANCELLED.value
            profile.stripe_subscription_id = None
            profile.subscription_current_period_end = None
            _save(db, profile)
            logger.info("Subscription cancelled: user_id=%s", profile.id)
            return profile
        case PaymentFailed(customer_id=customer_id):
            profile = _profile_by_customer(db, customer_id)
            if profile is None:
                return None
            profile.subscription_status = SubscriptionStatus.PAST_DUE.value
            _save(db, profile)
            logger.warning("Payment failed: user_id=%s", profile.id)
            return profile
        case UnhandledEvent(event_type=event_type):
            logger.info("Unhandled Stripe event type: %s", event_type)
            return None


def handle_webhook(db: Session, event: dict) -> bool:
    """
    Applies a verified Stripe event once. A redelivered event id is acknowledged and skipped.
    Returns True when a profile was mutated.
    """
    event_id = event.get("id")
    if event_id and db.exec(select(BillingEvent).where(BillingEvent.stripe_event_id == event_id)).first():
        logger.info("Stripe event already processed: %s", event_id)
        return False
    profile = apply_event(db, parse_event(event))
    if event_id:
        db.add(
            BillingEvent(
                stripe_event_id=event_id,
                event_type=event.get("type") or "",
                profile_id=profile.id if profile else None,
                applied=profile is not None,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # a parallel delivery of the same event recorded it first
            db.rollback()
            logger.info("Stripe event recorded by a concurrent delivery: %s", event_id)
    return profile is not None


def create_checkout_session(
    db: Session,
    profile: Profile,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> tuple[str, str]:
    """
    Resolves or creates the Stripe customer for profile (persisting stripe_customer_id),
    then opens a subscription checkout for the Pro price. Returns (session_id, url).
    Stripe API errors propagate as stripe.StripeError.
    """
    if not settings.stripe_secret_key or not settings.stripe_price_id_pro_monthly:
        raise BillingNotConfigured("STRIPE_SECRET_KEY / STRIPE_PRICE_ID_PRO_MONTHLY not set")
    api_key = settings.stripe_secret_key
    customer_id = profile.stripe_customer_id
    if not customer_id:
        customer = stripe.Customer.create(
            api_key=api_key,
            email=profile.email or None,
            name=profile.name or None,
            metadata={"user_id": profile.id},
        )
        customer_id = customer.id
        profile.stripe_customer_id = customer_id
        _save(db, profile)
        logger.info("Stripe customer created: user_id=%s customer=%s", profile.id, customer_id)

    base = settings.frontend_url.rstrip("/")
    session = stripe.checkout.Session.create(
        api_key=api_key,
        customer=customer_id,
        mode="subscription",
        payment_method_types=["card"],
        line_items=[{"price": settings.stripe_price_id_pro_monthly, "quantity": 1}],
        success_url=(success_url or "").strip() or f"{base}/dashboard?upgrade=success",
        cancel_url=(cancel_url or "").strip() or f"{base}/dashboard?upgrade=cancelled",
        client_reference_id=profile.id,
        metadata={"user_id": profile.id},
    )
    return session.id, session.url
