"""
Failure and status-transition handling.

Handles:
- SUBSCRIPTION_PAYMENT_FAILED: mark FAILED and revoke all access
- SUBSCRIPTION_STATUS_CHANGED: map the gateway status, write it, and revoke
  access when the new status no longer entitles the user

Both are best-effort: errors are logged, never raised, because the gateway
redelivering the event is the only retry mechanism. Revocation is applied in
the same transaction as the status write.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from meterguard.core.context import BillingContext
from meterguard.core.database import user_subscriptions, users
from meterguard.core.logging import log_event
from meterguard.core.timeutils import utc_now
from meterguard.models.subscription import PaymentStatus, SubscriptionStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# Gateway vocabulary -> internal status
GATEWAY_STATUS_MAP = {
    "BANK_APPROVAL_PENDING": SubscriptionStatus.PENDING,
    "INITIALIZED": SubscriptionStatus.PENDING,
    "ON_HOLD": SubscriptionStatus.PAUSED,
    "CANCELLED": SubscriptionStatus.CANCELLED,
    "COMPLETED": SubscriptionStatus.EXPIRED,
}

# Gateway statuses that keep the user's access
ENTITLED_GATEWAY_STATUSES = frozenset({"ACTIVE", "PENDING", "BANK_APPROVAL_PENDING", "INITIALIZED"})


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    subscription_id: Optional[str] = None
    user_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    revoked: bool = False
    reason: Optional[str] = None


def map_gateway_status(gateway_status: str) -> Optional[SubscriptionStatus]:
    """Translate a gateway status; None when it is not recognized."""
    normalized = (gateway_status or "").strip().upper()
    if normalized in GATEWAY_STATUS_MAP:
        return GATEWAY_STATUS_MAP[normalized]
    try:
        return SubscriptionStatus(normalized)
    except ValueError:
        return None


def on_payment_failed(ctx: BillingContext, gateway_subscription_id: str) -> TransitionResult:
    """
    Mark the subscription FAILED and revoke the user's access.

    Revocation clears entitlement_id and zeroes user_limit and free_trial.
    Repeated delivery yields the same end state. CANCELLED and EXPIRED rows
    are left alone.
    """
    now = utc_now()
    try:
        with ctx.session() as session:
            sub = session.execute(
                select(user_subscriptions.c.id, user_subscriptions.c.user_id, user_subscriptions.c.status)
                .where(user_subscriptions.c.gateway_subscription_id == gateway_subscription_id)
                .with_for_update()
            ).first()
            if not sub:
                log_event(
                    "warning",
                    "[revocation] payment failed for unknown subscription",
                    extra={"gateway_subscription_id": gateway_subscription_id},
                    logger=logger,
                )
                return TransitionResult(applied=False, reason="not_found")

            result = session.execute(
                update(user_subscriptions)
                .where(user_subscriptions.c.id == sub.id)
                .where(user_subscriptions.c.status.not_in([
                    SubscriptionStatus.CANCELLED.value,
                    SubscriptionStatus.EXPIRED.value,
                ]))
                .values(
                    status=SubscriptionStatus.FAILED.value,
                    payment_status=PaymentStatus.FAILED.value,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                log_event(
                    "info",
                    "[revocation] payment failed ignored for closed subscription",
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    extra={"current_status": sub.status},
                    logger=logger,
                )
                return TransitionResult(
                    applied=False,
                    subscription_id=sub.id,
                    user_id=sub.user_id,
                    status=SubscriptionStatus(sub.status),
                    reason="terminal",
                )

            session.execute(
                update(users)
                .where(users.c.id == sub.user_id)
                .values(entitlement_id=None, user_limit=0, free_trial=0, updated_at=now)
            )
    except SQLAlchemyError:
        logger.error(
            "[revocation] payment failed handling aborted",
            exc_info=True,
            extra={"gateway_subscription_id": gateway_subscription_id},
        )
        return TransitionResult(applied=False, reason="error")

    log_event(
        "info",
        "[revocation] payment failed, access revoked",
        user_id=sub.user_id,
        subscription_id=sub.id,
        logger=logger,
    )
    return TransitionResult(
        applied=True,
        subscription_id=sub.id,
        user_id=sub.user_id,
        status=SubscriptionStatus.FAILED,
        revoked=True,
    )


def on_status_changed(ctx: BillingContext, gateway_subscription_id: str, gateway_status: str) -> TransitionResult:
    """
    Apply a gateway lifecycle status to the subscription.

    Unrecognized statuses leave the status column untouched (but still revoke
    when the gateway status is outside the entitled set). A subscription that
    already reached a different terminal state is not modified.
    """
    now = utc_now()
    new_status = map_gateway_status(gateway_status)
    revoke = (gateway_status or "").strip().upper() not in ENTITLED_GATEWAY_STATUSES

    try:
        with ctx.session() as session:
            sub = session.execute(
                select(user_subscriptions.c.id, user_subscriptions.c.user_id, user_subscriptions.c.status)
                .where(user_subscriptions.c.gateway_subscription_id == gateway_subscription_id)
                .with_for_update()
            ).first()
            if not sub:
                log_event(
                    "warning",
                    "[revocation] status change for unknown subscription",
                    extra={"gateway_subscription_id": gateway_subscription_id, "gateway_status": gateway_status},
                    logger=logger,
                )
                return TransitionResult(applied=False, reason="not_found")

            current = SubscriptionStatus(sub.status)
            if current in TERMINAL_STATUSES and new_status != current:
                log_event(
                    "info",
                    "[revocation] status change ignored for terminal subscription",
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    extra={"current_status": current.value, "gateway_status": gateway_status},
                    logger=logger,
                )
                return TransitionResult(
                    applied=False,
                    subscription_id=sub.id,
                    user_id=sub.user_id,
                    status=current,
                    reason="terminal",
                )

            if new_status is None:
                log_event(
                    "warning",
                    "[revocation] unrecognized gateway status, status left unchanged",
                    user_id=sub.user_id,
                    subscription_id=sub.id,
                    extra={"gateway_status": gateway_status},
                    logger=logger,
                )
            else:
                session.execute(
                    update(user_subscriptions)
                    .where(user_subscriptions.c.id == sub.id)
                    .values(status=new_status.value, updated_at=now)
                )

            if revoke:
                session.execute(
                    update(users)
                    .where(users.c.id == sub.user_id)
                    .values(entitlement_id=None, user_limit=0, updated_at=now)
                )
    except SQLAlchemyError:
        logger.error(
            "[revocation] status change handling aborted",
            exc_info=True,
            extra={"gateway_subscription_id": gateway_subscription_id},
        )
        return TransitionResult(applied=False, reason="error")

    log_event(
        "info",
        "[revocation] subscription status changed",
        user_id=sub.user_id,
        subscription_id=sub.id,
        extra={
            "gateway_status": gateway_status,
            "new_status": new_status.value if new_status else None,
            "revoked": revoke,
        },
        logger=logger,
    )
    return TransitionResult(
        applied=True,
        subscription_id=sub.id,
        user_id=sub.user_id,
        status=new_status or current,
        revoked=revoke,
    )
