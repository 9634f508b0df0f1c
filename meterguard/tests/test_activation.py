"""
Tests for the activation transaction.

Covers the order path (exactly-once top-up), the recurring path (expiry
extension, limit reset), entitlement provisioning and rollback.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from meterguard.core.context import build_context
from meterguard.core.database import entitlements, user_subscriptions, users
from meterguard.core.errors import TransactionError
from meterguard.features.billing.activation import (
    activate_order_payment,
    activate_recurring_payment,
    activate_subscription,
    compute_next_expiry,
)
from meterguard.features.billing.service import initiate_order, initiate_subscription
from meterguard.features.plans.service import create_plan
from meterguard.features.users.service import create_user
from meterguard.models.plan import IntervalType

T0 = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)


def _user_row(ctx, user_id):
    with ctx.session() as session:
        return session.execute(select(users).where(users.c.id == user_id)).first()


def _sub_row(ctx, subscription_id):
    with ctx.session() as session:
        return session.execute(
            select(user_subscriptions).where(user_subscriptions.c.id == subscription_id)
        ).first()


def _entitlement_count(ctx):
    with ctx.session() as session:
        return session.execute(select(func.count()).select_from(entitlements)).scalar_one()


def _as_utc(value):
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def test_compute_next_expiry_uses_later_of_now_and_prior_expiry():
    assert compute_next_expiry(None, 1, IntervalType.MONTH, T0) == datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)

    expired = T0 - timedelta(days=40)
    assert compute_next_expiry(expired, 1, IntervalType.MONTH, T0) == datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)

    future = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert compute_next_expiry(future, 1, IntervalType.MONTH, T0) == datetime(2026, 4, 1, tzinfo=timezone.utc)


def test_compute_next_expiry_years_and_naive_input():
    naive_future = datetime(2027, 6, 1)
    assert compute_next_expiry(naive_future, 2, IntervalType.YEAR, T0) == datetime(2029, 6, 1, tzinfo=timezone.utc)


def test_compute_next_expiry_clamps_month_end():
    jan31 = datetime(2026, 1, 31, tzinfo=timezone.utc)
    assert compute_next_expiry(None, 1, IntervalType.MONTH, jan31) == datetime(2026, 2, 28, tzinfo=timezone.utc)


def test_order_activation_grants_entitlement_and_tops_up(ctx, make_user, make_order_plan):
    user = make_user(free_trial=3)
    plan = make_order_plan(limit_number=10, amount="199.00")
    order = initiate_order(ctx, user.id, plan.id)

    result = activate_order_payment(ctx, order.order_id, "pay_1", "199.00", now=T0)

    assert result.activated
    assert result.cycles_completed == 1
    sub = _sub_row(ctx, order.subscription_id)
    assert sub.status == "ACTIVE"
    assert sub.payment_status == "SUCCESS"
    assert sub.gateway_payment_id == "pay_1"
    assert Decimal(str(sub.amount_paid)) == Decimal("199.00")
    assert _as_utc(sub.started_at) == T0
    assert sub.expires_at is None
    assert sub.cycles_completed == 1

    row = _user_row(ctx, user.id)
    assert row.entitlement_id == result.entitlement_id
    assert row.user_limit == 10
    assert row.free_trial == 0

    with ctx.session() as session:
        ent = session.execute(select(entitlements).where(entitlements.c.id == result.entitlement_id)).first()
    assert ent.name == plan.name
    assert ent.plan_id == plan.id
    assert ent.is_limited is True
    assert ent.plan_limit == 10


def test_duplicate_order_webhook_is_a_noop(ctx, make_user, make_order_plan):
    """Replayed success for an ORDER: user_limit ends at 10, not 20."""
    user = make_user()
    plan = make_order_plan(limit_number=10)
    order = initiate_order(ctx, user.id, plan.id)

    first = activate_order_payment(ctx, order.order_id, "pay_1", 199, now=T0)
    second = activate_order_payment(ctx, order.order_id, "pay_1", 199, now=T0 + timedelta(minutes=1))

    assert first.activated
    assert not second.activated
    assert second.reason == "duplicate"
    assert _user_row(ctx, user.id).user_limit == 10
    sub = _sub_row(ctx, order.subscription_id)
    assert sub.cycles_completed == 1
    assert Decimal(str(sub.amount_paid)) == Decimal("199")
    assert _entitlement_count(ctx) == 1


@pytest.fixture
def file_ctx(test_settings, gateway, tmp_path):
    """Context on a file-backed SQLite database, so sessions get separate connections."""
    context = build_context(test_settings, database_url=f"sqlite:///{tmp_path / 'race.db'}", gateway=gateway)
    yield context
    context.close()


def test_redelivery_racing_between_read_and_update_grants_once(file_ctx):
    """
    The second delivery commits after the first one read PENDING but before
    it wrote. The first must then match zero rows instead of topping up again.
    """
    user = create_user(file_ctx, "racer@example.com", free_trial=0)
    plan = create_plan(
        file_ctx,
        {"name": "Top-up pack", "plan_type": "ORDER", "amount": Decimal("199.00"), "is_limited": True, "limit_number": 10},
    )
    order = initiate_order(file_ctx, user.id, plan.id)
    racing = []

    def update_after_concurrent_delivery(table):
        if table is user_subscriptions and not racing:
            racing.append(activate_order_payment(file_ctx, order.order_id, "pay_1", 199, now=T0))
        return update(table)

    with patch("meterguard.features.billing.activation.update", side_effect=update_after_concurrent_delivery):
        first = activate_order_payment(file_ctx, order.order_id, "pay_1", 199, now=T0)

    [concurrent] = racing
    assert concurrent.activated
    assert not first.activated
    assert first.reason == "duplicate"
    assert _user_row(file_ctx, user.id).user_limit == 10
    assert _sub_row(file_ctx, order.subscription_id).cycles_completed == 1
    assert _entitlement_count(file_ctx) == 1


def test_second_order_tops_up_existing_entitlement(ctx, make_user, make_order_plan):
    user = make_user()
    small = make_order_plan(limit_number=10, name="Small pack")
    large = make_order_plan(limit_number=25, name="Large pack")

    first = activate_order_payment(ctx, initiate_order(ctx, user.id, small.id).order_id, "p1", 1, now=T0)
    second = activate_order_payment(ctx, initiate_order(ctx, user.id, large.id).order_id, "p2", 1, now=T0)

    assert second.entitlement_id == first.entitlement_id
    assert _entitlement_count(ctx) == 1
    assert _user_row(ctx, user.id).user_limit == 35
    with ctx.session() as session:
        ent = session.execute(select(entitlements)).first()
    assert ent.name == "Small pack"


def test_order_activation_replaces_dangling_entitlement_reference(ctx, make_user, make_order_plan):
    user = make_user()
    with ctx.session() as session:
        session.execute(update(users).where(users.c.id == user.id).values(entitlement_id="gone", user_limit=2))
    plan = make_order_plan(limit_number=10)

    result = activate_order_payment(ctx, initiate_order(ctx, user.id, plan.id).order_id, "p1", 1, now=T0)

    row = _user_row(ctx, user.id)
    assert row.entitlement_id == result.entitlement_id != "gone"
    assert row.user_limit == 12


def test_recurring_renewals_extend_expiry_and_reset_limit(ctx, make_user, make_subscription_plan):
    """Two monthly renewals: expiry +2 months, cycles 2, limit reset not summed."""
    user = make_user(free_trial=2)
    plan = make_subscription_plan(limit_number=50, intervals=1, interval_type="MONTH")
    initiation = initiate_subscription(ctx, user.id, plan.id)
    gateway_id = _sub_row(ctx, initiation.user_subscription_id).gateway_subscription_id

    first = activate_recurring_payment(ctx, gateway_id, "pay_1", "499.00", now=T0)
    assert first.activated
    assert first.expires_at == datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)
    assert _user_row(ctx, user.id).user_limit == 50

    # Use some of the quota before the next charge
    with ctx.session() as session:
        session.execute(update(users).where(users.c.id == user.id).values(user_limit=7))

    second = activate_recurring_payment(ctx, gateway_id, "pay_2", "499.00", now=T0 + timedelta(days=30))
    assert second.activated
    assert second.expires_at == datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)
    assert second.entitlement_id == first.entitlement_id

    sub = _sub_row(ctx, initiation.user_subscription_id)
    assert sub.cycles_completed == 2
    assert _as_utc(sub.expires_at) == datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)
    assert _as_utc(sub.started_at) == T0
    assert sub.gateway_payment_id == "pay_2"
    assert Decimal(str(sub.amount_paid)) == Decimal("998.00")

    row = _user_row(ctx, user.id)
    assert row.user_limit == 50
    assert row.free_trial == 0
    assert _entitlement_count(ctx) == 1


def test_late_renewal_counts_from_now(ctx, make_user, make_subscription_plan):
    user = make_user()
    plan = make_subscription_plan(intervals=1)
    initiation = initiate_subscription(ctx, user.id, plan.id)
    gateway_id = _sub_row(ctx, initiation.user_subscription_id).gateway_subscription_id

    activate_recurring_payment(ctx, gateway_id, "p1", 1, now=T0)
    late = T0 + timedelta(days=90)
    result = activate_recurring_payment(ctx, gateway_id, "p2", 1, now=late)

    assert result.expires_at == datetime(2026, 5, 15, 10, 0, tzinfo=timezone.utc)


def test_subscription_tier_change_rewrites_entitlement_in_place(ctx, make_user, make_subscription_plan):
    user = make_user()
    basic = make_subscription_plan(limit_number=20, name="Basic")
    pro = make_subscription_plan(limit_number=100, name="Pro", is_limited=False)

    basic_sub = initiate_subscription(ctx, user.id, basic.id)
    first = activate_subscription(ctx, basic_sub.user_subscription_id, "p1", 1, recurring=True, now=T0)

    pro_sub = initiate_subscription(ctx, user.id, pro.id)
    second = activate_subscription(ctx, pro_sub.user_subscription_id, "p2", 1, recurring=True, now=T0)

    assert second.entitlement_id == first.entitlement_id
    with ctx.session() as session:
        ent = session.execute(select(entitlements).where(entitlements.c.id == first.entitlement_id)).first()
    assert ent.name == "Pro"
    assert ent.plan_id == pro.id
    assert ent.is_limited is False
    assert ent.plan_limit == 100
    assert _user_row(ctx, user.id).user_limit == 100


@pytest.mark.parametrize("terminal", ["FAILED", "CANCELLED", "EXPIRED"])
def test_recurring_charge_on_terminal_subscription_is_ignored(ctx, make_user, make_subscription_plan, terminal):
    user = make_user()
    plan = make_subscription_plan()
    initiation = initiate_subscription(ctx, user.id, plan.id)
    with ctx.session() as session:
        session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.id == initiation.user_subscription_id)
            .values(status=terminal)
        )

    result = activate_subscription(ctx, initiation.user_subscription_id, "p1", 1, recurring=True, now=T0)

    assert not result.activated
    assert result.reason == "terminal"
    assert _sub_row(ctx, initiation.user_subscription_id).status == terminal
    assert _user_row(ctx, user.id).entitlement_id is None


def test_paused_subscription_reactivates_on_charge(ctx, make_user, make_subscription_plan):
    user = make_user()
    plan = make_subscription_plan()
    initiation = initiate_subscription(ctx, user.id, plan.id)
    with ctx.session() as session:
        session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.id == initiation.user_subscription_id)
            .values(status="PAUSED")
        )
    result = activate_subscription(ctx, initiation.user_subscription_id, "p1", 1, recurring=True, now=T0)
    assert result.activated
    assert _sub_row(ctx, initiation.user_subscription_id).status == "ACTIVE"


def test_unknown_references_are_not_found(ctx):
    assert activate_order_payment(ctx, "ORDER_missing", "p", 1).reason == "not_found"
    assert activate_recurring_payment(ctx, "cf_missing", "p", 1).reason == "not_found"
    assert activate_subscription(ctx, "missing", "p", 1).reason == "not_found"


def test_storage_failure_rolls_back_everything(ctx, make_user, make_order_plan):
    user = make_user(free_trial=2)
    plan = make_order_plan(limit_number=10)
    order = initiate_order(ctx, user.id, plan.id)

    boom = OperationalError("INSERT INTO entitlements", {}, Exception("disk I/O error"))
    with patch("meterguard.features.billing.activation._provision_entitlement", side_effect=boom):
        with pytest.raises(TransactionError) as exc:
            activate_order_payment(ctx, order.order_id, "pay_1", 199, now=T0)

    assert exc.value.status_code == 500
    sub = _sub_row(ctx, order.subscription_id)
    assert sub.status == "PENDING"
    assert sub.cycles_completed == 0
    row = _user_row(ctx, user.id)
    assert row.entitlement_id is None
    assert row.user_limit == 0
    assert row.free_trial == 2

    # The redelivered event then succeeds
    assert activate_order_payment(ctx, order.order_id, "pay_1", 199, now=T0).activated
    assert _user_row(ctx, user.id).user_limit == 10
