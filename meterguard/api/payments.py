"""
Payment API routes.

- POST /api/payments/create-order: start a one-time ORDER purchase
- POST /api/payments/create-subscription: start a recurring SUBSCRIPTION
- GET  /api/payments/status: caller's entitlement and active subscription

Initiation only records a PENDING purchase; access is granted by the webhook.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from meterguard.core.auth import get_billing_context, get_current_user_id
from meterguard.core.context import BillingContext
from meterguard.features.billing.service import (
    get_billing_status,
    initiate_order,
    initiate_subscription,
)


router = APIRouter(prefix="/payments", tags=["payments"])


class PurchaseRequest(BaseModel):
    plan_id: str

    @field_validator("plan_id")
    @classmethod
    def plan_id_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("plan_id is required")
        return value.strip()


class OrderResponse(BaseModel):
    payment_session_id: str
    order_id: str
    subscription_id: str


class SubscriptionResponse(BaseModel):
    subscription_id: str
    subscription_session_id: Optional[str] = None
    subscription_status: Optional[str] = None
    user_subscription_id: str


class EntitlementSummary(BaseModel):
    id: str
    name: str
    plan_id: Optional[str] = None
    is_limited: bool
    plan_limit: int


class SubscriptionSummary(BaseModel):
    id: str
    plan_id: str
    status: str
    amount_paid: Decimal
    currency: str
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cycles_completed: int


class BillingStatusResponse(BaseModel):
    enabled: bool
    free_trial: int
    user_limit: int
    entitlement: Optional[EntitlementSummary] = None
    subscription: Optional[SubscriptionSummary] = None


@router.post("/create-order", response_model=OrderResponse, status_code=201)
def create_order(
    body: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
):
    """
    Create a gateway order for an ORDER plan.

    Errors:
        404: plan or user not found
        409: open purchase already exists for this plan
        502: gateway rejected the order
        503: gateway not configured
    """
    result = initiate_order(ctx, user_id, body.plan_id)
    return OrderResponse(
        payment_session_id=result.payment_session_id,
        order_id=result.order_id,
        subscription_id=result.subscription_id,
    )


@router.post("/create-subscription", response_model=SubscriptionResponse, status_code=201)
def create_subscription(
    body: PurchaseRequest,
    user_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
):
    result = initiate_subscription(ctx, user_id, body.plan_id)
    return SubscriptionResponse(
        subscription_id=result.subscription_id,
        subscription_session_id=result.subscription_session_id,
        subscription_status=result.subscription_status,
        user_subscription_id=result.user_subscription_id,
    )


@router.get("/status", response_model=BillingStatusResponse)
def get_status(
    user_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
):
    status = get_billing_status(ctx, user_id)
    entitlement = status["entitlement"]
    subscription = status["subscription"]
    return BillingStatusResponse(
        enabled=status["enabled"],
        free_trial=status["free_trial"],
        user_limit=status["user_limit"],
        entitlement=EntitlementSummary(
            id=entitlement.id,
            name=entitlement.name,
            plan_id=entitlement.plan_id,
            is_limited=entitlement.is_limited,
            plan_limit=entitlement.plan_limit,
        ) if entitlement else None,
        subscription=SubscriptionSummary(
            id=subscription.id,
            plan_id=subscription.plan_id,
            status=subscription.status.value,
            amount_paid=subscription.amount_paid,
            currency=subscription.currency,
            started_at=subscription.started_at,
            expires_at=subscription.expires_at,
            cycles_completed=subscription.cycles_completed,
        ) if subscription else None,
    )
