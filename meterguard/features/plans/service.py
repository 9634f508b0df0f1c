"""
Plan catalog service.

- create_plan: validate per type, store, sync SUBSCRIPTION plans to the
  gateway (deleting the local row again if the sync fails)
- list_plans: newest first, optional type filter, page/limit pagination
- get_plan
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, func, insert, select, update

from meterguard.core.context import BillingContext
from meterguard.core.database import plans
from meterguard.core.errors import GatewayError, NotFoundError, ValidationError
from meterguard.core.logging import log_event
from meterguard.core.timeutils import utc_now
from meterguard.features.gateway.provider import GatewayPlanRequest
from meterguard.models.plan import IntervalType, Plan, PlanType

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _validate_plan_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    try:
        plan_type = PlanType(str(data.get("plan_type", "")).upper())
    except ValueError:
        raise ValidationError("plan_type must be ORDER or SUBSCRIPTION")

    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Plan name is required")

    amount = data.get("amount")
    if amount is None or Decimal(str(amount)) <= 0:
        raise ValidationError("Plan amount must be positive")

    interval_type = data.get("interval_type")
    if interval_type is not None:
        try:
            interval_type = IntervalType(str(interval_type).upper())
        except ValueError:
            raise ValidationError("interval_type must be MONTH or YEAR")

    if plan_type == PlanType.SUBSCRIPTION:
        if not data.get("max_cycles") or not data.get("intervals") or not interval_type:
            raise ValidationError("Subscription plans require max_cycles, intervals, and interval_type")

    if plan_type == PlanType.ORDER and not data.get("limit_number"):
        raise ValidationError("Order type plans require limit_number to be set")

    limit_number = data.get("limit_number")
    if limit_number is not None and int(limit_number) < 0:
        raise ValidationError("limit_number cannot be negative")

    return {
        "name": name,
        "description": data.get("description"),
        "plan_type": plan_type.value,
        "amount": Decimal(str(amount)),
        "recurring_amount": Decimal(str(data["recurring_amount"])) if data.get("recurring_amount") is not None else None,
        "max_amount": Decimal(str(data["max_amount"])) if data.get("max_amount") is not None else None,
        "currency": (data.get("currency") or "INR").upper(),
        "is_limited": bool(data.get("is_limited", True)),
        "limit_number": int(limit_number) if limit_number is not None else None,
        "intervals": int(data["intervals"]) if data.get("intervals") is not None else None,
        "interval_type": interval_type.value if interval_type else None,
        "max_cycles": int(data["max_cycles"]) if data.get("max_cycles") is not None else None,
    }


def get_plan(ctx: BillingContext, plan_id: str) -> Optional[Plan]:
    """Get plan by ID."""
    with ctx.session() as session:
        row = session.execute(select(plans).where(plans.c.id == plan_id)).first()
        return Plan.from_row(row) if row else None


def _gateway_plan_request(plan: Plan) -> GatewayPlanRequest:
    return GatewayPlanRequest(
        plan_id=plan.id,
        plan_name=plan.name,
        currency=plan.currency,
        recurring_amount=plan.recurring_amount or plan.amount,
        max_amount=plan.max_amount or plan.amount,
        max_cycles=plan.max_cycles,
        intervals=plan.intervals,
        interval_type=plan.interval_type.value,
        note=plan.description or f"Subscription for {plan.name}",
    )


def create_plan(ctx: BillingContext, data: Dict[str, Any]) -> Plan:
    """
    Create a plan.

    ORDER plans are stored locally only. SUBSCRIPTION plans are then created
    on the gateway; if that fails the local row is deleted and GatewayError
    raised, so no unsynced subscription plan is ever left behind.

    Raises:
        ValidationError: missing fields for the plan type
        GatewayError: gateway sync failed (local row rolled back)
        BillingDisabledError: SUBSCRIPTION plan without a gateway
    """
    fields = _validate_plan_fields(data)
    if fields["plan_type"] == PlanType.SUBSCRIPTION.value:
        gateway = ctx.require_gateway()

    plan_id = str(uuid.uuid4())
    with ctx.session() as session:
        session.execute(insert(plans).values(id=plan_id, created_at=utc_now(), **fields))

    plan = get_plan(ctx, plan_id)
    logger.info("[plans] plan created locally", extra={"plan_id": plan_id, "plan_type": plan.plan_type.value})

    if plan.plan_type != PlanType.SUBSCRIPTION:
        return plan

    try:
        gateway_plan_id = gateway.create_plan(_gateway_plan_request(plan))
    except GatewayError as e:
        with ctx.session() as session:
            session.execute(delete(plans).where(plans.c.id == plan_id))
        log_event(
            "error",
            "[plans] gateway sync failed, local plan removed",
            error_code="gateway_error",
            extra={"plan_id": plan_id, "error_message": e.message},
            logger=logger,
        )
        raise GatewayError(f"Failed to create plan on payment gateway: {e.message}") from e

    with ctx.session() as session:
        session.execute(
            update(plans)
            .where(plans.c.id == plan_id)
            .values(gateway_plan_id=gateway_plan_id, gateway_synced=True, status="ACTIVE")
        )
    logger.info("[plans] plan synced to gateway", extra={"plan_id": plan_id, "gateway_plan_id": gateway_plan_id})
    return get_plan(ctx, plan_id)


def list_plans(
    ctx: BillingContext,
    plan_type: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Dict[str, Any]:
    """
    List plans newest first.

    Returns:
        {"plans": [Plan], "pagination": {"total_plans", "current_page", "limit"}}
    """
    if page < 1:
        raise ValidationError("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    query = select(plans)
    count_query = select(func.count()).select_from(plans)
    if plan_type:
        try:
            type_value = PlanType(plan_type.upper()).value
        except ValueError:
            raise ValidationError("plan_type must be ORDER or SUBSCRIPTION")
        query = query.where(plans.c.plan_type == type_value)
        count_query = count_query.where(plans.c.plan_type == type_value)

    with ctx.session() as session:
        total = session.execute(count_query).scalar_one()
        rows = session.execute(
            query.order_by(desc(plans.c.created_at)).offset((page - 1) * limit).limit(limit)
        ).all()
        items: List[Plan] = [Plan.from_row(row) for row in rows]

    return {
        "plans": items,
        "pagination": {"total_plans": total, "current_page": page, "limit": limit},
    }


def require_plan(ctx: BillingContext, plan_id: str) -> Plan:
    plan = get_plan(ctx, plan_id)
    if not plan:
        raise NotFoundError("Plan not found", code="plan_not_found")
    return plan
