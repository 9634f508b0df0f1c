"""
meterguard/features/entitlements/service.py

Entitlement Guard: admission control for the metered capability.

Handles:
- evaluate_access: side-effect-free decision with a decrement tag
- require_access: the same decision mapped onto the error taxonomy
- consume_access: the caller's post-success decrement, as one conditional
  UPDATE so concurrent requests can never drive a counter below zero
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

from sqlalchemy import select, update

from meterguard.core.context import BillingContext
from meterguard.core.database import entitlements, users
from meterguard.core.errors import ForbiddenError, NotFoundError, QuotaExceededError
from meterguard.core.logging import log_event


logger = logging.getLogger(__name__)

NO_ENTITLEMENT_REASON = "no entitlement or free trial"
LIMIT_EXCEEDED_REASON = "usage limit exceeded"


class AccessStatus(str, Enum):
    """Outcome of an access decision."""
    ALLOW = "ALLOW"
    DENY = "DENY"
    NOT_FOUND = "NOT_FOUND"


class DecrementTag(str, Enum):
    """Which counter the caller must decrement after a successful call."""
    FREE_TRIAL = "free_trial"
    ENTITLEMENT_UNLIMITED = "entitlement_unlimited"
    ENTITLEMENT_LIMITED = "entitlement_limited"


@dataclass(frozen=True)
class AccessDecision:
    status: AccessStatus
    user_id: str
    tag: Optional[DecrementTag] = None
    entitlement_id: Optional[str] = None
    reason: Optional[str] = None
    code: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.status == AccessStatus.ALLOW


def _allow(user_id: str, tag: DecrementTag, entitlement_id: Optional[str] = None) -> AccessDecision:
    return AccessDecision(status=AccessStatus.ALLOW, user_id=user_id, tag=tag, entitlement_id=entitlement_id)


def _deny(user_id: str, reason: str, code: str, entitlement_id: Optional[str] = None) -> AccessDecision:
    log_event(
        "warning",
        "[entitlement] DENY",
        user_id=user_id,
        error_code=code,
        extra={"reason": reason, "entitlement_id": entitlement_id},
        logger=logger,
    )
    return AccessDecision(
        status=AccessStatus.DENY,
        user_id=user_id,
        entitlement_id=entitlement_id,
        reason=reason,
        code=code,
    )


def _not_found(user_id: str, reason: str, code: str) -> AccessDecision:
    log_event("warning", "[entitlement] NOT_FOUND", user_id=user_id, error_code=code, extra={"reason": reason}, logger=logger)
    return AccessDecision(status=AccessStatus.NOT_FOUND, user_id=user_id, reason=reason, code=code)


def evaluate_access(ctx: BillingContext, user_id: str) -> AccessDecision:
    """
    Decide whether the user may run the metered capability.

    Rules, first match wins:
    1. free_trial > 0 -> ALLOW (free_trial)
    2. no entitlement -> DENY
    3. referenced entitlement missing -> NOT_FOUND
    4. unlimited entitlement -> ALLOW (entitlement_unlimited)
    5. limited and user_limit <= 0 -> DENY
    6. limited and user_limit > 0 -> ALLOW (entitlement_limited)

    Never writes. The caller decrements via consume_access only after the
    protected operation succeeded.
    """
    with ctx.session() as session:
        user = session.execute(
            select(users.c.id, users.c.free_trial, users.c.entitlement_id, users.c.user_limit)
            .where(users.c.id == user_id)
        ).first()
        if not user:
            return _not_found(user_id, "User not found", "user_not_found")

        if user.free_trial > 0:
            return _allow(user_id, DecrementTag.FREE_TRIAL)

        if not user.entitlement_id:
            return _deny(user_id, NO_ENTITLEMENT_REASON, "no_entitlement")

        entitlement = session.execute(
            select(entitlements.c.id, entitlements.c.is_limited)
            .where(entitlements.c.id == user.entitlement_id)
        ).first()

    if not entitlement:
        logger.error(
            "[entitlement] user references a missing entitlement",
            extra={"user_id": user_id, "entitlement_id": user.entitlement_id},
        )
        return _not_found(user_id, "Entitlement not found", "entitlement_not_found")

    if not entitlement.is_limited:
        return _allow(user_id, DecrementTag.ENTITLEMENT_UNLIMITED, entitlement.id)

    if user.user_limit <= 0:
        return _deny(user_id, LIMIT_EXCEEDED_REASON, "quota_exceeded", entitlement.id)

    return _allow(user_id, DecrementTag.ENTITLEMENT_LIMITED, entitlement.id)


def require_access(ctx: BillingContext, user_id: str) -> AccessDecision:
    """evaluate_access for HTTP callers: raise instead of returning a denial."""
    decision = evaluate_access(ctx, user_id)
    if decision.status == AccessStatus.NOT_FOUND:
        raise NotFoundError(decision.reason, code=decision.code)
    if decision.status == AccessStatus.DENY:
        if decision.code == "quota_exceeded":
            raise QuotaExceededError(decision.reason)
        raise ForbiddenError(decision.reason, code=decision.code)
    return decision


def consume_access(ctx: BillingContext, user_id: str, decision: AccessDecision) -> bool:
    """
    Apply the decrement a successful call owes.

    Compare-and-decrement at the storage layer: the UPDATE only matches while
    the counter is still positive. Returns True when a unit was consumed.
    Unlimited entitlements consume nothing and return True.
    """
    if not decision.allowed:
        return False
    if decision.user_id != user_id:
        raise ValueError("decision belongs to a different user")

    if decision.tag == DecrementTag.ENTITLEMENT_UNLIMITED:
        return True

    if decision.tag == DecrementTag.FREE_TRIAL:
        column = users.c.free_trial
    elif decision.tag == DecrementTag.ENTITLEMENT_LIMITED:
        column = users.c.user_limit
    else:
        raise ValueError(f"Unknown decrement tag: {decision.tag}")

    with ctx.session() as session:
        result = session.execute(
            update(users)
            .where(users.c.id == user_id)
            .where(column > 0)
            .values({column.name: column - 1})
        )
        consumed = result.rowcount == 1

    if not consumed:
        log_event(
            "warning",
            "[entitlement] decrement skipped, counter already exhausted",
            user_id=user_id,
            extra={"tag": decision.tag.value},
            logger=logger,
        )
    return consumed
