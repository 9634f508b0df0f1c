"""
Auth utilities for the meterguard API.

Resolves the caller's user id from request context:
1. Bearer JWT (HS256 by default) verified with JWT_SECRET_KEY, user id in 'sub'
2. X-User-Id header when ALLOW_HEADER_AUTH is on (local dev, tests)
3. Otherwise 401

Token issuance lives elsewhere; this module only verifies.
"""
import logging
from typing import Optional

import jwt
from fastapi import Depends, Header, Request

from meterguard.core.context import BillingContext
from meterguard.core.errors import ForbiddenError, UnauthorizedError
from meterguard.models.user import UserRole

logger = logging.getLogger(__name__)


def get_billing_context(request: Request) -> BillingContext:
    """The context built by the app lifespan (or injected by tests)."""
    return request.app.state.billing_context


def verify_jwt(token: str, secret_key: str, algorithm: str = "HS256") -> str:
    """
    Verify a JWT and extract user_id.

    Returns:
        user_id from the 'sub' claim

    Raises:
        UnauthorizedError: expired, invalid, or missing 'sub'
    """
    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("No 'sub' claim in token")
    return str(user_id)


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Dev/test user ID"),
    ctx: BillingContext = Depends(get_billing_context),
) -> str:
    cfg = ctx.settings
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        if not cfg.JWT_SECRET_KEY:
            raise UnauthorizedError("Bearer tokens are not accepted: JWT_SECRET_KEY not configured")
        user_id = verify_jwt(auth_header[7:], cfg.JWT_SECRET_KEY, cfg.JWT_ALGORITHM)
        request.state.user_id = user_id
        return user_id

    if x_user_id and cfg.ALLOW_HEADER_AUTH:
        request.state.user_id = x_user_id
        return x_user_id

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")


def require_admin(
    user_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
) -> str:
    """Allow only callers whose user row has role ADMIN."""
    from meterguard.features.users.service import get_user

    user = get_user(ctx, user_id)
    if not user or user.role != UserRole.ADMIN:
        raise ForbiddenError("Admin access required", code="admin_required")
    return user_id
