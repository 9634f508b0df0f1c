"""
Plan catalog routes (admin only).

- POST /api/plans
- GET  /api/plans?plan_type=&page=&limit=
"""
from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from meterguard.core.auth import get_billing_context, require_admin
from meterguard.core.context import BillingContext
from meterguard.features.plans.service import create_plan, list_plans, require_plan


router = APIRouter(prefix="/plans", tags=["plans"])


class CreatePlanRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    plan_type: Literal["ORDER", "SUBSCRIPTION"]
    amount: Decimal = Field(gt=0)
    recurring_amount: Optional[Decimal] = Field(default=None, gt=0)
    max_amount: Optional[Decimal] = Field(default=None, gt=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    is_limited: bool = True
    limit_number: Optional[int] = Field(default=None, ge=0)
    intervals: Optional[int] = Field(default=None, ge=1)
    interval_type: Optional[Literal["MONTH", "YEAR"]] = None
    max_cycles: Optional[int] = Field(default=None, ge=1)


@router.post("", status_code=201)
def create_plan_endpoint(
    body: CreatePlanRequest,
    _admin: str = Depends(require_admin),
    ctx: BillingContext = Depends(get_billing_context),
):
    """
    Create a plan. SUBSCRIPTION plans are synced to the gateway first.

    Errors:
        400: missing fields for the plan type
        403: caller is not an admin
        502: gateway sync failed (plan not created)
    """
    plan = create_plan(ctx, body.model_dump())
    return {"data": plan}


@router.get("")
def list_plans_endpoint(
    plan_type: Optional[Literal["ORDER", "SUBSCRIPTION"]] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    _admin: str = Depends(require_admin),
    ctx: BillingContext = Depends(get_billing_context),
):
    return list_plans(ctx, plan_type=plan_type, page=page, limit=limit)


@router.get("/{plan_id}")
def get_plan_endpoint(
    plan_id: str,
    _admin: str = Depends(require_admin),
    ctx: BillingContext = Depends(get_billing_context),
):
    return {"data": require_plan(ctx, plan_id)}
