"""
Tests for the plan catalog service.
"""
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from meterguard.core.database import plans
from meterguard.core.errors import BillingDisabledError, GatewayError, NotFoundError, ValidationError
from meterguard.features.plans.service import create_plan, get_plan, list_plans, require_plan
from meterguard.models.plan import IntervalType, PlanType


def _subscription_payload(**overrides):
    payload = {
        "name": "Pro yearly",
        "plan_type": "SUBSCRIPTION",
        "amount": Decimal("4999.00"),
        "limit_number": 600,
        "intervals": 1,
        "interval_type": "YEAR",
        "max_cycles": 5,
    }
    payload.update(overrides)
    return payload


def _plan_count(ctx):
    with ctx.session() as session:
        return session.execute(select(func.count()).select_from(plans)).scalar_one()


@pytest.mark.parametrize(
    "payload,fragment",
    [
        ({"name": "x", "plan_type": "BUNDLE", "amount": 1}, "plan_type"),
        ({"name": "  ", "plan_type": "ORDER", "amount": 1, "limit_number": 1}, "name"),
        ({"name": "x", "plan_type": "ORDER", "amount": 0, "limit_number": 1}, "amount"),
        ({"name": "x", "plan_type": "ORDER", "amount": 5}, "limit_number"),
        ({"name": "x", "plan_type": "ORDER", "amount": 5, "limit_number": -1}, "limit_number"),
        (_subscription_payload(max_cycles=None), "max_cycles"),
        (_subscription_payload(interval_type="WEEK"), "interval_type"),
    ],
)
def test_invalid_plans_are_rejected(ctx, payload, fragment):
    with pytest.raises(ValidationError) as exc:
        create_plan(ctx, payload)
    assert fragment in exc.value.message
    assert _plan_count(ctx) == 0


def test_order_plan_is_stored_without_gateway_sync(ctx, gateway):
    plan = create_plan(
        ctx,
        {"name": "Starter", "plan_type": "order", "amount": "99.00", "limit_number": 5, "currency": "inr"},
    )

    assert plan.plan_type == PlanType.ORDER
    assert plan.amount == Decimal("99.00")
    assert plan.currency == "INR"
    assert plan.limit_number == 5
    assert plan.is_limited is True
    assert plan.gateway_plan_id is None
    assert plan.gateway_synced is False
    assert gateway.plans == []


def test_subscription_plan_is_synced_to_gateway(ctx, gateway):
    plan = create_plan(ctx, _subscription_payload(recurring_amount="4999.00"))

    assert plan.gateway_synced is True
    assert plan.gateway_plan_id == plan.id
    assert plan.interval_type == IntervalType.YEAR
    assert plan.has_interval_data

    [sent] = gateway.plans
    assert sent.plan_id == plan.id
    assert sent.plan_name == "Pro yearly"
    assert sent.interval_type == "YEAR"
    assert sent.max_cycles == 5
    assert sent.recurring_amount == Decimal("4999.00")
    assert sent.max_amount == Decimal("4999.00")


def test_failed_gateway_sync_removes_local_plan(ctx, gateway):
    gateway.fail_plans = "plan_intervals is invalid"

    with pytest.raises(GatewayError) as exc:
        create_plan(ctx, _subscription_payload())

    assert exc.value.message == "Failed to create plan on payment gateway: plan_intervals is invalid"
    assert _plan_count(ctx) == 0


def test_subscription_plan_requires_gateway(ctx):
    ctx.gateway = None
    with pytest.raises(BillingDisabledError):
        create_plan(ctx, _subscription_payload())
    assert _plan_count(ctx) == 0


def test_get_and_require_plan(ctx, make_order_plan):
    plan = make_order_plan()
    assert get_plan(ctx, plan.id) == plan
    assert get_plan(ctx, "nope") is None
    with pytest.raises(NotFoundError) as exc:
        require_plan(ctx, "nope")
    assert exc.value.code == "plan_not_found"


def test_list_plans_filters_and_paginates(ctx, make_order_plan, make_subscription_plan):
    order_ids = {make_order_plan(name=f"Pack {i}").id for i in range(3)}
    sub = make_subscription_plan()

    everything = list_plans(ctx)
    assert everything["pagination"] == {"total_plans": 4, "current_page": 1, "limit": 10}
    assert len(everything["plans"]) == 4

    only_orders = list_plans(ctx, plan_type="order")
    assert {p.id for p in only_orders["plans"]} == order_ids
    assert only_orders["pagination"]["total_plans"] == 3

    only_subs = list_plans(ctx, plan_type="SUBSCRIPTION")
    assert [p.id for p in only_subs["plans"]] == [sub.id]

    first = list_plans(ctx, page=1, limit=3)
    second = list_plans(ctx, page=2, limit=3)
    assert len(first["plans"]) == 3
    assert len(second["plans"]) == 1
    assert second["pagination"]["total_plans"] == 4
    assert {p.id for p in first["plans"] + second["plans"]} == order_ids | {sub.id}


@pytest.mark.parametrize("kwargs", [{"page": 0}, {"limit": 0}, {"limit": 101}, {"plan_type": "BUNDLE"}])
def test_list_plans_rejects_bad_arguments(ctx, kwargs):
    with pytest.raises(ValidationError):
        list_plans(ctx, **kwargs)
