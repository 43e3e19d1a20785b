import logging
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from db.database import get_db
from db.models import SUBSCRIPTION_STATUSES, User
from services.billing_service import BillingError, BillingNotConfiguredError, BillingService, list_plans
from services.storage import HealthStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class CreateSubscriptionRequest(BaseModel):
    tier: Literal["basic", "pro", "premium"]
    interval: Literal["monthly", "yearly"] = "monthly"


def _billing() -> BillingService:
    try:
        return BillingService()
    except BillingNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


def _display_name(user: User) -> str | None:
    name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return name or None


@router.get("/plans")
def subscription_plans():
    return {"plans": list_plans()}


@router.post("/create")
def create_subscription(
    req: CreateSubscriptionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    billing = _billing()
    try:
        price_id = billing.price_id_for(req.tier, req.interval)
        customer_id = user.stripe_customer_id or billing.create_customer(
            email=user.email, name=_display_name(user), user_id=user.id
        )
        snapshot = billing.create_subscription(customer_id=customer_id, price_id=price_id)
    except BillingNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except BillingError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    status = snapshot.status if snapshot.status in SUBSCRIPTION_STATUSES else "incomplete"
    updated = HealthStorage(db).update_user_subscription(
        user.id,
        customer_id,
        snapshot.subscription_id,
        status,
        req.tier,
        snapshot.expires_at,
    )
    logger.info(f"User {user.id} started {req.tier} ({req.interval}) subscription, status {status}")
    return {
        "subscription_id": snapshot.subscription_id,
        "client_secret": snapshot.client_secret,
        "status": updated.subscription_status,
        "tier": updated.subscription_tier,
    }


@router.post("/cancel")
def cancel_subscription(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    if not user.stripe_subscription_id:
        raise HTTPException(status_code=400, detail="No active subscription")
    billing = _billing()
    try:
        snapshot = billing.cancel_subscription(user.stripe_subscription_id)
    except BillingError as exc:
        raise HTTPException(status_code=502, detail=str(exc))

    updated = HealthStorage(db).update_user_subscription(
        user.id,
        user.stripe_customer_id,
        snapshot.subscription_id,
        "canceled",
        "free",
    )
    logger.info(f"User {user.id} canceled subscription {snapshot.subscription_id}")
    return {"status": updated.subscription_status, "tier": updated.subscription_tier}
