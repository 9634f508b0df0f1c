"""
User domain service.
- create_user(ctx, email, ...)
- get_user(ctx, user_id)
- update_user_profile(ctx, user_id, name=..., phone=...)

Entitlement fields (free_trial, entitlement_id, user_limit) are seeded here
once and afterwards written only by the guard and the billing handlers.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from meterguard.core.context import BillingContext
from meterguard.core.database import users
from meterguard.core.errors import ConflictError, NotFoundError, ValidationError
from meterguard.core.timeutils import utc_now
from meterguard.models.user import User, UserRole

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "phone")


def get_user(ctx: BillingContext, user_id: str) -> Optional[User]:
    with ctx.session() as session:
        row = session.execute(select(users).where(users.c.id == user_id)).first()
        return User.from_row(row) if row else None


def require_user(ctx: BillingContext, user_id: str) -> User:
    user = get_user(ctx, user_id)
    if not user:
        raise NotFoundError("User not found", code="user_not_found")
    return user


def create_user(
    ctx: BillingContext,
    email: str,
    *,
    name: Optional[str] = None,
    phone: Optional[str] = None,
    role: UserRole = UserRole.USER,
    free_trial: Optional[int] = None,
    user_id: Optional[str] = None,
) -> User:
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    trial = ctx.settings.DEFAULT_FREE_TRIAL if free_trial is None else free_trial
    if trial < 0:
        raise ValidationError("free_trial cannot be negative")

    with ctx.session() as session:
        existing = session.execute(select(users.c.id).where(users.c.email == email)).first()
        if existing:
            raise ConflictError("User with this email already exists")

    new_id = user_id or str(uuid.uuid4())
    now = utc_now()
    try:
        with ctx.session() as session:
            session.execute(
                insert(users).values(
                    id=new_id,
                    email=email,
                    name=name,
                    phone=phone,
                    role=UserRole(role).value,
                    free_trial=trial,
                    user_limit=0,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError as e:
        raise ConflictError("User with this email already exists") from e

    logger.info("[users] user created", extra={"user_id": new_id})
    return require_user(ctx, new_id)


def update_user_profile(ctx: BillingContext, user_id: str, **changes) -> User:
    """Update profile fields. Anything outside name/phone is rejected."""
    unknown = set(changes) - set(PROFILE_FIELDS)
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    require_user(ctx, user_id)
    values = {k: v for k, v in changes.items() if v is not None}
    if values:
        with ctx.session() as session:
            session.execute(
                update(users).where(users.c.id == user_id).values(updated_at=utc_now(), **values)
            )
    return require_user(ctx, user_id)
