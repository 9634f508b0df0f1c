"""
Activation transaction.

Moves a UserSubscription to ACTIVE and (re)provisions the user's entitlement,
for both a first-time ORDER payment and each recurring SUBSCRIPTION charge.

Everything happens in one database transaction:
1. Lock and re-read the subscription (SELECT ... FOR UPDATE)
2. Compute the new expiry (recurring charges with interval data)
3. Compare-and-set the subscription row; zero rows matched means the event
   was already applied (or the row is terminal) and nothing else happens
4. Create or refresh the Entitlement
5. Top up (ORDER) or reset (SUBSCRIPTION) the user's limit

Storage failures roll the whole unit back and surface as TransactionError so
the webhook route answers 500 and the gateway redelivers.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

from dateutil.relativedelta import relativedelta
from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from meterguard.core.context import BillingContext
from meterguard.core.database import entitlements, plans, user_subscriptions, users
from meterguard.core.errors import TransactionError, ValidationError
from meterguard.core.logging import log_event
from meterguard.core.timeutils import ensure_utc, utc_now
from meterguard.models.plan import IntervalType, Plan, PlanType
from meterguard.models.subscription import PaymentStatus, SubscriptionStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivationResult:
    activated: bool
    subscription_id: Optional[str]
    user_id: Optional[str] = None
    entitlement_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    cycles_completed: Optional[int] = None
    reason: Optional[str] = None  # not_found, duplicate, terminal


def parse_amount(amount: Union[Decimal, int, float, str, None]) -> Decimal:
    """Coerce a gateway payment amount; missing means zero."""
    if amount is None:
        return Decimal("0")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid payment amount: {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise ValidationError(f"Invalid payment amount: {amount!r}")
    return value


def compute_next_expiry(
    current_expiry: Optional[datetime],
    intervals: int,
    interval_type: IntervalType,
    now: datetime,
) -> datetime:
    """Advance the later of (now, current expiry) by one billing interval."""
    current_expiry = ensure_utc(current_expiry)
    base = current_expiry if current_expiry and current_expiry > now else now
    if interval_type == IntervalType.YEAR:
        return base + relativedelta(years=intervals)
    return base + relativedelta(months=intervals)


def find_subscription_id(
    ctx: BillingContext,
    *,
    order_id: Optional[str] = None,
    gateway_subscription_id: Optional[str] = None,
) -> Optional[str]:
    """Resolve a gateway reference to the local UserSubscription id."""
    if order_id:
        clause = user_subscriptions.c.gateway_order_id == order_id
    elif gateway_subscription_id:
        clause = user_subscriptions.c.gateway_subscription_id == gateway_subscription_id
    else:
        return None
    with ctx.session() as session:
        row = session.execute(select(user_subscriptions.c.id).where(clause)).first()
        return row.id if row else None


def _provision_entitlement(session, user_row: Any, plan: Plan, now: datetime) -> str:
    """Return the entitlement id the user should point at after activation."""
    existing = None
    if user_row.entitlement_id:
        existing = session.execute(
            select(entitlements.c.id).where(entitlements.c.id == user_row.entitlement_id)
        ).first()

    fields = {
        "name": plan.name,
        "price": plan.amount,
        "plan_id": plan.id,
        "is_limited": plan.is_limited,
        "plan_limit": plan.limit_number or 0,
    }

    if existing and plan.plan_type == PlanType.SUBSCRIPTION:
        # Tier assignment: rewrite the current package in place
        session.execute(
            update(entitlements)
            .where(entitlements.c.id == existing.id)
            .values(updated_at=now, **fields)
        )
        return existing.id

    if existing:
        # ORDER top-up keeps the current package; only the limit moves
        return existing.id

    entitlement_id = str(uuid.uuid4())
    session.execute(
        insert(entitlements).values(id=entitlement_id, created_at=now, updated_at=now, **fields)
    )
    return entitlement_id


def activate_subscription(
    ctx: BillingContext,
    subscription_id: str,
    payment_id: Optional[str],
    amount: Union[Decimal, int, float, str, None],
    *,
    recurring: bool = False,
    now: Optional[datetime] = None,
) -> ActivationResult:
    """
    Mark a purchase paid and grant its entitlement, exactly once per charge.

    Order path (recurring=False): only a PENDING row can activate; a replayed
    success webhook matches zero rows and is a no-op.
    Recurring path (recurring=True): every charge on a non-terminal row
    applies, incrementing cycles_completed and extending expires_at.

    Raises:
        ValidationError: amount is not a non-negative number
        TransactionError: storage failed mid-transaction (nothing was applied)
    """
    now = ensure_utc(now) if now else utc_now()
    paid = parse_amount(amount)

    try:
        with ctx.session() as session:
            sub = session.execute(
                select(user_subscriptions)
                .where(user_subscriptions.c.id == subscription_id)
                .with_for_update()
            ).first()
            if not sub:
                log_event("warning", "[activation] subscription not found", subscription_id=subscription_id, logger=logger)
                return ActivationResult(activated=False, subscription_id=subscription_id, reason="not_found")

            plan_row = session.execute(select(plans).where(plans.c.id == sub.plan_id)).first()
            if not plan_row:
                raise TransactionError(f"Plan {sub.plan_id} missing for subscription {subscription_id}")
            plan = Plan.from_row(plan_row)

            expires_at = None
            if recurring and plan.has_interval_data:
                expires_at = compute_next_expiry(sub.expires_at, plan.intervals, plan.interval_type, now)

            values = {
                "status": SubscriptionStatus.ACTIVE.value,
                "payment_status": PaymentStatus.SUCCESS.value,
                "gateway_payment_id": payment_id,
                "amount_paid": user_subscriptions.c.amount_paid + paid,
                "started_at": ensure_utc(sub.started_at) or now,
                "cycles_completed": user_subscriptions.c.cycles_completed + 1,
                "updated_at": now,
            }
            if expires_at is not None:
                values["expires_at"] = expires_at

            stmt = update(user_subscriptions).where(user_subscriptions.c.id == subscription_id)
            if recurring:
                stmt = stmt.where(user_subscriptions.c.status.not_in([s.value for s in TERMINAL_STATUSES]))
            else:
                stmt = stmt.where(user_subscriptions.c.status == SubscriptionStatus.PENDING.value)

            result = session.execute(stmt.values(**values))
            if result.rowcount == 0:
                reason = "terminal" if recurring else "duplicate"
                log_event(
                    "info",
                    "[activation] skipped, event already applied or subscription closed",
                    user_id=sub.user_id,
                    subscription_id=subscription_id,
                    extra={"current_status": sub.status, "reason": reason},
                    logger=logger,
                )
                return ActivationResult(
                    activated=False,
                    subscription_id=subscription_id,
                    user_id=sub.user_id,
                    reason=reason,
                )

            user_row = session.execute(
                select(users).where(users.c.id == sub.user_id).with_for_update()
            ).first()
            if not user_row:
                raise TransactionError(f"User {sub.user_id} missing for subscription {subscription_id}")

            entitlement_id = _provision_entitlement(session, user_row, plan, now)

            limit = plan.limit_number or 0
            if plan.plan_type == PlanType.ORDER:
                new_limit = users.c.user_limit + limit
            else:
                new_limit = limit
            session.execute(
                update(users)
                .where(users.c.id == sub.user_id)
                .values(
                    entitlement_id=entitlement_id,
                    user_limit=new_limit,
                    free_trial=0,
                    updated_at=now,
                )
            )
            cycles = sub.cycles_completed + 1
            final_expiry = expires_at or ensure_utc(sub.expires_at)
    except TransactionError:
        logger.error("[activation] transaction aborted", exc_info=True, extra={"subscription_id": subscription_id})
        raise
    except SQLAlchemyError as e:
        logger.error("[activation] transaction aborted", exc_info=True, extra={"subscription_id": subscription_id})
        raise TransactionError(f"Activation failed for subscription {subscription_id}") from e

    log_event(
        "info",
        "[activation] subscription activated",
        user_id=sub.user_id,
        subscription_id=subscription_id,
        extra={
            "plan_id": plan.id,
            "plan_type": plan.plan_type.value,
            "recurring": recurring,
            "cycles_completed": cycles,
            "entitlement_id": entitlement_id,
        },
        logger=logger,
    )
    return ActivationResult(
        activated=True,
        subscription_id=subscription_id,
        user_id=sub.user_id,
        entitlement_id=entitlement_id,
        expires_at=final_expiry,
        cycles_completed=cycles,
    )


def activate_order_payment(
    ctx: BillingContext,
    order_id: str,
    payment_id: Optional[str],
    amount: Union[Decimal, int, float, str, None],
    *,
    now: Optional[datetime] = None,
) -> ActivationResult:
    """Order path entry point keyed by the gateway order id."""
    subscription_id = find_subscription_id(ctx, order_id=order_id)
    if not subscription_id:
        log_event("warning", "[activation] no subscription for order", extra={"order_id": order_id}, logger=logger)
        return ActivationResult(activated=False, subscription_id=None, reason="not_found")
    return activate_subscription(ctx, subscription_id, payment_id, amount, recurring=False, now=now)


def activate_recurring_payment(
    ctx: BillingContext,
    gateway_subscription_id: str,
    payment_id: Optional[str],
    amount: Union[Decimal, int, float, str, None],
    *,
    now: Optional[datetime] = None,
) -> ActivationResult:
    """Recurring path entry point keyed by the gateway subscription id."""
    subscription_id = find_subscription_id(ctx, gateway_subscription_id=gateway_subscription_id)
    if not subscription_id:
        log_event(
            "warning",
            "[activation] no subscription for gateway reference",
            extra={"gateway_subscription_id": gateway_subscription_id},
            logger=logger,
        )
        return ActivationResult(activated=False, subscription_id=None, reason="not_found")
    return activate_subscription(ctx, subscription_id, payment_id, amount, recurring=True, now=now)
