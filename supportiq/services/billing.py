from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from supportiq.core.config import get_settings
from supportiq.core.errors import SupportIQError, WebhookSignatureError
from supportiq.domain.models import User
from supportiq.persistence.repos import subscriptions as subscriptions_repo
from supportiq.persistence.repos import users as users_repo
from supportiq.services.trial import convert_trial


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    key: str
    name: str
    price_usd: int
    features: tuple[str, ...]


PLANS: dict[str, Plan] = {
    "starter": Plan(
        key="starter",
        name="Starter",
        price_usd=99,
        features=("Up to 1,000 tickets/month", "Basic insights dashboard", "Email support", "3 team members"),
    ),
    "pro": Plan(
        key="pro",
        name="Professional",
        price_usd=299,
        features=(
            "Up to 5,000 tickets/month",
            "Advanced AI insights",
            "Priority support",
            "Unlimited team members",
        ),
    ),
    "enterprise": Plan(
        key="enterprise",
        name="Enterprise",
        price_usd=899,
        features=("Unlimited tickets", "Dedicated success manager", "SLA guarantees", "Advanced security"),
    ),
}

# Stripe subscription status -> stored subscription status.
_STRIPE_STATUSES = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "unpaid",
    "incomplete": "incomplete",
    "incomplete_expired": "expired",
}

# Stored subscription status -> user-facing account status.
_USER_STATUSES = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "incomplete": "past_due",
    "canceled": "canceled",
    "expired": "expired",
}


@dataclass(frozen=True)
class StripeEventResult:
    handled: bool
    user_id: str | None = None
    message: str = ""


def map_stripe_status(status: str | None) -> str:
    return _STRIPE_STATUSES.get(status or "", "unknown")


YEARLY_DISCOUNT = 0.10
BILLING_CYCLES = ("monthly", "yearly")
# Stripe rejects a subscription trial_end less than 48 hours out.
MIN_TRIAL_END = timedelta(hours=48)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str | None
    amount_cents: int


def plan_amount_cents(plan: Plan, billing_cycle: str) -> int:
    monthly = plan.price_usd * 100
    if billing_cycle == "yearly":
        return int(round(monthly * 12 * (1 - YEARLY_DISCOUNT)))
    return monthly


def verify_stripe_signature(
    payload: bytes,
    header: str | None,
    secret: str | None,
    *,
    tolerance_s: int | None = None,
) -> None:
    """Validate a ``Stripe-Signature`` header with ``stripe.Webhook.construct_event``.

    Raises ``WebhookSignatureError`` when the secret is unset (503) or the
    header is missing, malformed, stale, or carries no matching signature (401).
    A verified body that is not JSON is rejected with ``INVALID_PAYLOAD``.
    """
    if not secret:
        raise WebhookSignatureError("Stripe webhook secret is not configured", status_code=503)
    if not header:
        raise WebhookSignatureError("Missing Stripe signature")
    tolerance = tolerance_s if tolerance_s is not None else get_settings().stripe_signature_tolerance_s
    try:
        stripe.Webhook.construct_event(payload, header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError("Invalid Stripe signature") from exc
    except ValueError as exc:
        raise SupportIQError("Stripe webhook body is not valid JSON", code="INVALID_PAYLOAD", status_code=400) from exc


async def create_checkout_session(
    user: User,
    *,
    plan_key: str,
    billing_cycle: str = "monthly",
    is_trial_conversion: bool = False,
    trial_end: datetime | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    """Open a subscription Checkout Session for ``user`` on ``plan_key``.

    Metadata carries ``userId``, ``planId``, ``billingCycle`` and
    ``isTrialConversion`` so the webhook handlers can attribute the result.
    """
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise SupportIQError("Stripe is not configured", code="BILLING_NOT_CONFIGURED", status_code=503)
    plan = PLANS.get(plan_key)
    if plan is None:
        raise SupportIQError(f"Unknown plan {plan_key}", code="INVALID_PLAN", status_code=400)
    if billing_cycle not in BILLING_CYCLES:
        raise SupportIQError(f"Unknown billing cycle {billing_cycle}", code="INVALID_PLAN", status_code=400)

    amount = plan_amount_cents(plan, billing_cycle)
    metadata = {
        "userId": user.id,
        "planId": plan.key,
        "billingCycle": billing_cycle,
        "isTrialConversion": "true" if is_trial_conversion else "false",
    }
    subscription_data: dict[str, Any] = {"metadata": dict(metadata)}
    current = now or datetime.now(timezone.utc)
    if is_trial_conversion and trial_end is not None and trial_end - current >= MIN_TRIAL_END:
        subscription_data["trial_end"] = int(trial_end.timestamp())

    params: dict[str, Any] = {
        "mode": "subscription",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "price_data": {
                    "currency": "usd",
                    "unit_amount": amount,
                    "recurring": {"interval": "year" if billing_cycle == "yearly" else "month"},
                    "product_data": {"name": f"SupportIQ {plan.name}"},
                },
                "quantity": 1,
            }
        ],
        "success_url": f"{settings.app_url}/dashboard/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{settings.app_url}/pricing?canceled=true",
        "metadata": metadata,
        "subscription_data": subscription_data,
        "allow_promotion_codes": True,
    }
    if user.stripe_customer_id:
        params["customer"] = user.stripe_customer_id
    else:
        params["customer_email"] = user.email

    try:
        session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=settings.stripe_secret_key, **params)
    except stripe.StripeError as exc:
        logger.warning("stripe_checkout_failed user_id=%s plan=%s error=%s", user.id, plan.key, exc)
        raise SupportIQError(
            "Checkout could not be created", code="PAYMENT_FAILED", status_code=502
        ) from exc
    logger.info(
        "stripe_checkout_created user_id=%s plan=%s cycle=%s trial_conversion=%s",
        user.id,
        plan.key,
        billing_cycle,
        is_trial_conversion,
    )
    return CheckoutSession(id=session["id"], url=session.get("url"), amount_cents=amount)


def _from_epoch(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _plan_for(subscription: dict[str, Any]) -> tuple[str, str | None, str]:
    # Prefer explicit metadata; fall back to the configured price map.
    metadata = subscription.get("metadata") or {}
    items = ((subscription.get("items") or {}).get("data") or [{}])
    price = (items[0] or {}).get("price") or {}
    price_id = price.get("id")
    interval = ((price.get("recurring") or {}).get("interval")) or "month"
    plan = metadata.get("planId") or get_settings().price_plan_map().get(price_id or "", "starter")
    billing_cycle = "yearly" if interval == "year" else "monthly"
    return str(plan).lower(), price_id, billing_cycle


async def _resolve_user(
    session: AsyncSession, *, metadata: dict[str, Any] | None, customer_id: str | None
) -> User | None:
    user_id = (metadata or {}).get("userId")
    if user_id:
        user = await users_repo.get_user(session, user_id)
        if user is not None:
            return user
    if customer_id:
        return await users_repo.get_by_stripe_customer(session, customer_id)
    return None


async def sync_subscription(session: AsyncSession, subscription: dict[str, Any]) -> StripeEventResult:
    """Mirror a Stripe subscription object onto the subscription row and its user."""
    customer_id = subscription.get("customer")
    metadata = subscription.get("metadata") or {}
    user = await _resolve_user(session, metadata=metadata, customer_id=customer_id)
    if user is None:
        logger.warning("stripe_subscription_unmatched subscription_id=%s", subscription.get("id"))
        return StripeEventResult(handled=False, message="No user matches this subscription")

    status = map_stripe_status(subscription.get("status"))
    plan, price_id, billing_cycle = _plan_for(subscription)
    await subscriptions_repo.upsert_subscription(
        session,
        stripe_subscription_id=subscription["id"],
        user_id=user.id,
        fields={
            "stripe_customer_id": customer_id,
            "stripe_price_id": price_id,
            "plan": plan,
            "status": status,
            "current_period_start": _from_epoch(subscription.get("current_period_start")),
            "current_period_end": _from_epoch(subscription.get("current_period_end")),
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "canceled_at": _from_epoch(subscription.get("canceled_at")),
        },
    )

    if metadata.get("isTrialConversion") == "true" and status == "active":
        await convert_trial(session, user, plan=plan, billing_cycle=billing_cycle, reason="Stripe checkout completed")
    else:
        user.subscription_plan = plan
        user.subscription_status = _USER_STATUSES.get(status, user.subscription_status)
        user.billing_cycle = billing_cycle
    if customer_id:
        user.stripe_customer_id = customer_id
    await session.flush()
    logger.info("stripe_subscription_synced user_id=%s status=%s plan=%s", user.id, status, plan)
    return StripeEventResult(handled=True, user_id=user.id, message=f"Subscription {status}")


async def _handle_checkout_completed(session: AsyncSession, checkout: dict[str, Any]) -> StripeEventResult:
    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("userId")
    plan = metadata.get("planId")
    if not user_id or not plan:
        logger.warning("stripe_checkout_missing_metadata session_id=%s", checkout.get("id"))
        return StripeEventResult(handled=False, message="Missing checkout metadata")
    user = await users_repo.get_user(session, user_id)
    if user is None:
        return StripeEventResult(handled=False, message="Unknown user")
    await convert_trial(
        session,
        user,
        plan=str(plan).lower(),
        billing_cycle=metadata.get("billingCycle") or "monthly",
        reason="checkout",
    )
    if checkout.get("customer"):
        user.stripe_customer_id = checkout["customer"]
    await session.flush()
    return StripeEventResult(handled=True, user_id=user.id, message="Checkout completed")


async def _handle_subscription_deleted(session: AsyncSession, subscription: dict[str, Any]) -> StripeEventResult:
    user = await _resolve_user(
        session, metadata=subscription.get("metadata"), customer_id=subscription.get("customer")
    )
    existing = await subscriptions_repo.get_by_stripe_id(session, subscription["id"])
    if existing is not None:
        existing.status = "canceled"
        existing.canceled_at = _from_epoch(subscription.get("canceled_at")) or datetime.now(timezone.utc)
        existing.cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))
    if user is None:
        return StripeEventResult(handled=existing is not None, message="Subscription canceled")
    user.subscription_status = "canceled"
    await session.flush()
    logger.info("stripe_subscription_canceled user_id=%s", user.id)
    return StripeEventResult(handled=True, user_id=user.id, message="Subscription canceled")


async def _user_for_invoice(session: AsyncSession, invoice: dict[str, Any]) -> User | None:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        existing = await subscriptions_repo.get_by_stripe_id(session, subscription_id)
        if existing is not None:
            return await users_repo.get_user(session, existing.user_id)
    metadata = (invoice.get("subscription_details") or {}).get("metadata")
    return await _resolve_user(session, metadata=metadata, customer_id=invoice.get("customer"))


async def _handle_payment_succeeded(session: AsyncSession, invoice: dict[str, Any]) -> StripeEventResult:
    user = await _user_for_invoice(session, invoice)
    if user is None:
        return StripeEventResult(handled=False, message="No user matches this invoice")
    # Only a past_due account recovers on payment; other states are owned by subscription events.
    if user.subscription_status == "past_due":
        user.subscription_status = "active"
        await session.flush()
    return StripeEventResult(handled=True, user_id=user.id, message="Payment succeeded")


async def _handle_payment_failed(session: AsyncSession, invoice: dict[str, Any]) -> StripeEventResult:
    user = await _user_for_invoice(session, invoice)
    if user is None:
        return StripeEventResult(handled=False, message="No user matches this invoice")
    user.subscription_status = "past_due"
    await session.flush()
    logger.warning("stripe_payment_failed user_id=%s invoice_id=%s", user.id, invoice.get("id"))
    return StripeEventResult(handled=True, user_id=user.id, message="Payment failed")


async def handle_stripe_event(session: AsyncSession, event: dict[str, Any]) -> StripeEventResult:
    event_type = event.get("type") or ""
    obj = (event.get("data") or {}).get("object") or {}
    if event_type == "checkout.session.completed":
        return await _handle_checkout_completed(session, obj)
    if event_type in {"customer.subscription.created", "customer.subscription.updated"}:
        return await sync_subscription(session, obj)
    if event_type == "customer.subscription.deleted":
        return await _handle_subscription_deleted(session, obj)
    if event_type == "invoice.payment_succeeded":
        return await _handle_payment_succeeded(session, obj)
    if event_type == "invoice.payment_failed":
        return await _handle_payment_failed(session, obj)
    logger.info("stripe_event_ignored type=%s", event_type)
    return StripeEventResult(handled=False, message=f"Unhandled event type {event_type}")
