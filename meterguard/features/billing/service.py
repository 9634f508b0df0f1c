"""
Billing service: purchase initiation and billing status.

Coordinates:
- One-time ORDER purchases (top-ups)
- Recurring SUBSCRIPTION purchases
- The caller-facing billing status summary

A purchase only creates a PENDING UserSubscription. Access is granted later,
exclusively by the webhook-driven activation transaction.

All Cashfree-specific code is in features/gateway/cashfree_provider.py.
"""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import desc, insert, select
from sqlalchemy.exc import IntegrityError

from meterguard.core.context import BillingContext
from meterguard.core.database import entitlements, plans, user_subscriptions, users
from meterguard.core.errors import ConflictError, InvalidStateError, NotFoundError
from meterguard.core.logging import log_event
from meterguard.features.gateway.provider import GatewayCustomer, SubscriptionPlanDetails
from meterguard.models.entitlement import Entitlement
from meterguard.models.plan import Plan, PlanType
from meterguard.models.subscription import OPEN_STATUSES, PaymentStatus, SubscriptionStatus, UserSubscription
from meterguard.models.user import User

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = "An active or pending subscription already exists for this plan"


@dataclass(frozen=True)
class OrderInitiation:
    payment_session_id: str
    order_id: str
    subscription_id: str


@dataclass(frozen=True)
class SubscriptionInitiation:
    subscription_id: str
    subscription_session_id: Optional[str]
    subscription_status: Optional[str]
    user_subscription_id: str


def create_random_id(prefix: str) -> str:
    """<prefix>_<epoch ms>_<random hex>, unique across processes."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def build_order_id(plan_type: PlanType, user_id: str) -> str:
    # Cashfree caps order_id at 45 characters
    return f"ORDER_{plan_type.value}_{user_id[:5]}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _load_purchase_parties(ctx: BillingContext, user_id: str, plan_id: str) -> Tuple[User, Plan]:
    """Load user and plan and enforce the one-open-purchase rule."""
    with ctx.session() as session:
        plan_row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
        if not plan_row:
            raise NotFoundError("Plan not found", code="plan_not_found")

        user_row = session.execute(select(users).where(users.c.id == user_id)).first()
        if not user_row:
            raise NotFoundError("User not found", code="user_not_found")

        plan = Plan.from_row(plan_row)
        user = User.from_row(user_row)
        _ensure_no_open_purchase(session, user_id, plan_id)
        return user, plan


def _ensure_no_open_purchase(session, user_id: str, plan_id: str) -> None:
    existing = session.execute(
        select(user_subscriptions.c.id)
        .where(user_subscriptions.c.user_id == user_id)
        .where(user_subscriptions.c.plan_id == plan_id)
        .where(user_subscriptions.c.status.in_([s.value for s in OPEN_STATUSES]))
    ).first()
    if existing:
        raise ConflictError(CONFLICT_MESSAGE)


def _customer_for(ctx: BillingContext, user: User) -> GatewayCustomer:
    return GatewayCustomer(
        customer_id=user.id,
        email=user.email,
        phone=user.phone or ctx.settings.DEFAULT_CUSTOMER_PHONE,
        name=user.name or "User",
    )


def _insert_pending(ctx: BillingContext, values: Dict[str, Any]) -> str:
    subscription_id = str(uuid.uuid4())
    try:
        with ctx.session() as session:
            session.execute(
                insert(user_subscriptions).values(
                    id=subscription_id,
                    status=SubscriptionStatus.PENDING.value,
                    payment_status=PaymentStatus.PENDING.value,
                    **values,
                )
            )
    except IntegrityError as e:
        # Partial unique index: a concurrent initiation won the race
        log_event(
            "warning",
            "[billing] open purchase already exists at insert time",
            user_id=values.get("user_id"),
            error_code="conflict",
            extra={"plan_id": values.get("plan_id"), "error_message": str(e.orig)},
            logger=logger,
        )
        raise ConflictError(CONFLICT_MESSAGE) from e
    return subscription_id


def initiate_order(ctx: BillingContext, user_id: str, plan_id: str) -> OrderInitiation:
    """
    Start a one-time purchase.

    Flow:
    1. Validate user/plan and reject a second open purchase (409)
    2. Create the order on the gateway
    3. Only then record a PENDING UserSubscription

    A gateway failure raises GatewayError and leaves no local row.

    Raises:
        NotFoundError, ConflictError, GatewayError, BillingDisabledError
    """
    gateway = ctx.require_gateway()
    user, plan = _load_purchase_parties(ctx, user_id, plan_id)

    order_id = build_order_id(plan.plan_type, user_id)
    return_url = ctx.settings.ORDER_RETURN_URL.format(order_id=order_id)

    payment_session_id = gateway.create_order(
        order_id=order_id,
        amount=plan.amount,
        currency=plan.currency,
        customer=_customer_for(ctx, user),
        return_url=return_url,
        note=f"Purchase of {plan.name}",
    )

    subscription_id = _insert_pending(
        ctx,
        {
            "user_id": user_id,
            "plan_id": plan_id,
            "gateway_order_id": order_id,
            "usage_count": (plan.limit_number or 0) if plan.is_limited else 0,
            "currency": plan.currency,
            "payment_metadata": {"payment_session_id": payment_session_id},
        },
    )

    log_event(
        "info",
        "[billing] order created, waiting for webhook",
        user_id=user_id,
        subscription_id=subscription_id,
        extra={"order_id": order_id, "plan_id": plan_id},
        logger=logger,
    )
    return OrderInitiation(
        payment_session_id=payment_session_id,
        order_id=order_id,
        subscription_id=subscription_id,
    )


def initiate_subscription(ctx: BillingContext, user_id: str, plan_id: str) -> SubscriptionInitiation:
    """
    Start a recurring subscription against a gateway-synced plan.

    Raises:
        NotFoundError: user or plan missing
        InvalidStateError: plan is not SUBSCRIPTION, or not synced to the gateway
        ConflictError: an open purchase already exists for the pair
        GatewayError: the gateway rejected the subscription
    """
    gateway = ctx.require_gateway()
    user, plan = _load_purchase_parties(ctx, user_id, plan_id)

    if plan.plan_type != PlanType.SUBSCRIPTION:
        raise InvalidStateError("Invalid plan type for subscription")
    if not plan.gateway_plan_id:
        raise InvalidStateError("This plan is not synced with the payment gateway")

    merchant_subscription_id = create_random_id("SUB")
    plan_details = SubscriptionPlanDetails(
        gateway_plan_id=plan.gateway_plan_id,
        plan_name=plan.name,
        amount=plan.amount,
        max_amount=plan.max_amount,
        currency=plan.currency,
        max_cycles=plan.max_cycles or ctx.settings.SUBSCRIPTION_MAX_CYCLES,
        intervals=plan.intervals,
        interval_type=plan.interval_type.value if plan.interval_type else None,
    )
    created = gateway.create_subscription(
        subscription_id=merchant_subscription_id,
        plan_details=plan_details,
        customer=_customer_for(ctx, user),
        note=f"Subscription for {plan.name}",
    )

    user_subscription_id = _insert_pending(
        ctx,
        {
            "user_id": user_id,
            "plan_id": plan_id,
            "gateway_subscription_id": created.gateway_subscription_id,
            "currency": plan.currency,
            "payment_metadata": {
                "subscription_id": merchant_subscription_id,
                "subscription_session_id": created.session_id,
            },
        },
    )

    log_event(
        "info",
        "[billing] subscription created, waiting for webhook",
        user_id=user_id,
        subscription_id=user_subscription_id,
        extra={"gateway_subscription_id": created.gateway_subscription_id, "plan_id": plan_id},
        logger=logger,
    )
    return SubscriptionInitiation(
        subscription_id=merchant_subscription_id,
        subscription_session_id=created.session_id,
        subscription_status=created.status,
        user_subscription_id=user_subscription_id,
    )


def get_billing_status(ctx: BillingContext, user_id: str) -> Dict[str, Any]:
    """
    Get user's billing status.

    Returns:
        {
            "enabled": bool,
            "free_trial": int,
            "user_limit": int,
            "entitlement": Entitlement | None,
            "subscription": UserSubscription | None  (latest ACTIVE)
        }
    """
    with ctx.session() as session:
        user_row = session.execute(select(users).where(users.c.id == user_id)).first()
        if not user_row:
            raise NotFoundError("User not found", code="user_not_found")
        user = User.from_row(user_row)

        entitlement = None
        if user.entitlement_id:
            row = session.execute(
                select(entitlements).where(entitlements.c.id == user.entitlement_id)
            ).first()
            entitlement = Entitlement.from_row(row) if row else None

        sub_row = session.execute(
            select(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .where(user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value)
            .order_by(desc(user_subscriptions.c.updated_at))
            .limit(1)
        ).first()
        subscription = UserSubscription.from_row(sub_row) if sub_row else None

    return {
        "enabled": ctx.gateway is not None,
        "free_trial": user.free_trial,
        "user_limit": user.user_limit,
        "entitlement": entitlement,
        "subscription": subscription,
    }
