from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import stripe

from config import settings

logger = logging.getLogger(__name__)

PAID_TIERS = ("basic", "pro", "premium")
BILLING_INTERVALS = ("monthly", "yearly")

PLAN_CATALOG = {
    "free": {"name": "Free", "features": ["Manual health metrics", "Lab result storage"]},
    "basic": {"name": "Basic", "features": ["Apple Health sync", "AI insights"]},
    "pro": {"name": "Pro", "features": ["Apple Health sync", "AI insights", "Lab marker extraction", "Health plans"]},
    "premium": {"name": "Premium", "features": ["Everything in Pro", "Priority analysis"]},
}


class BillingError(Exception):
    pass


class BillingNotConfiguredError(BillingError):
    pass


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str
    status: str
    expires_at: Optional[datetime]
    client_secret: Optional[str] = None


def _get_stripe_config() -> StripeConfig:
    """Fail closed: without a secret key no billing call proceeds."""
    secret_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not secret_key:
        raise BillingNotConfiguredError("Stripe not configured (missing: STRIPE_SECRET_KEY)")
    return StripeConfig(secret_key=secret_key)


def list_plans() -> list[dict[str, Any]]:
    plans = []
    for tier, meta in PLAN_CATALOG.items():
        prices = {}
        if tier in PAID_TIERS:
            prices = {interval: settings.stripe_price_id(tier, interval) for interval in BILLING_INTERVALS}
        plans.append({"tier": tier, "name": meta["name"], "features": list(meta["features"]), "price_ids": prices})
    return plans


def _period_end(subscription: Any) -> Optional[datetime]:
    raw = getattr(subscription, "current_period_end", None)
    if raw is None:
        # Newer API versions report the period on each subscription item.
        try:
            items = subscription["items"]["data"]
        except (KeyError, TypeError):
            items = []
        if items:
            raw = getattr(items[0], "current_period_end", None)
    if not raw:
        return None
    return datetime.fromtimestamp(int(raw), tz=timezone.utc).replace(tzinfo=None)


def _client_secret(subscription: Any) -> Optional[str]:
    invoice = getattr(subscription, "latest_invoice", None)
    if invoice is None or isinstance(invoice, str):
        return None
    payment_intent = getattr(invoice, "payment_intent", None)
    if payment_intent is not None and not isinstance(payment_intent, str):
        return getattr(payment_intent, "client_secret", None)
    confirmation = getattr(invoice, "confirmation_secret", None)
    if confirmation is not None:
        return getattr(confirmation, "client_secret", None)
    return None


class BillingService:
    def __init__(self) -> None:
        cfg = _get_stripe_config()
        stripe.api_key = cfg.secret_key
        self.cfg = cfg

    def price_id_for(self, tier: str, interval: str) -> str:
        if tier not in PAID_TIERS:
            raise BillingError(f"Unknown paid tier: {tier}")
        if interval not in BILLING_INTERVALS:
            raise BillingError(f"Unknown billing interval: {interval}")
        price_id = settings.stripe_price_id(tier, interval)
        if not price_id:
            raise BillingNotConfiguredError(f"No Stripe price configured for {tier} ({interval})")
        return price_id

    def create_customer(self, *, email: Optional[str], name: Optional[str], user_id: str) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                name=name or email,
                metadata={"user_id": user_id},
            )
        except stripe.StripeError as exc:
            logger.error(f"Error creating Stripe customer for user {user_id}: {exc}")
            raise BillingError(f"Failed to create Stripe customer: {exc}") from exc
        return str(customer.id)

    def create_subscription(self, *, customer_id: str, price_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                expand=["latest_invoice.payment_intent"],
            )
        except stripe.StripeError as exc:
            logger.error(f"Error creating Stripe subscription for {customer_id}: {exc}")
            raise BillingError(f"Failed to create Stripe subscription: {exc}") from exc
        return SubscriptionSnapshot(
            subscription_id=str(subscription.id),
            status=str(subscription.status),
            expires_at=_period_end(subscription),
            client_secret=_client_secret(subscription),
        )

    def cancel_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as exc:
            logger.error(f"Error cancelling Stripe subscription {subscription_id}: {exc}")
            raise BillingError(f"Failed to cancel Stripe subscription: {exc}") from exc
        return SubscriptionSnapshot(
            subscription_id=str(subscription.id),
            status=str(subscription.status),
            expires_at=_period_end(subscription),
        )
