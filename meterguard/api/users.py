"""
User routes.

- POST  /api/users: sign up (seeds the free trial)
- GET   /api/users/{user_id}: self or admin
- PATCH /api/users/{user_id}: self only, profile fields only
"""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from meterguard.core.auth import get_billing_context, get_current_user_id
from meterguard.core.context import BillingContext
from meterguard.core.errors import ForbiddenError
from meterguard.features.users.service import create_user, get_user, require_user, update_user_profile
from meterguard.models.user import User, UserRole


router = APIRouter(prefix="/users", tags=["users"])


class CreateUserRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    name: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=20)


class UpdateUserRequest(BaseModel):
    # Unknown keys (e.g. user_limit) are rejected with 422
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=20)


def _ensure_self_or_admin(ctx: BillingContext, caller_id: str, user_id: str) -> None:
    if caller_id == user_id:
        return
    caller = get_user(ctx, caller_id)
    if not caller or caller.role != UserRole.ADMIN:
        raise ForbiddenError("Cannot access another user's record")


@router.post("", response_model=User, status_code=201)
def create_user_endpoint(body: CreateUserRequest, ctx: BillingContext = Depends(get_billing_context)):
    return create_user(ctx, body.email, name=body.name, phone=body.phone)


@router.get("/{user_id}", response_model=User)
def get_user_endpoint(
    user_id: str,
    caller_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
):
    _ensure_self_or_admin(ctx, caller_id, user_id)
    return require_user(ctx, user_id)


@router.patch("/{user_id}", response_model=User)
def update_user_endpoint(
    user_id: str,
    body: UpdateUserRequest,
    caller_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
):
    if caller_id != user_id:
        raise ForbiddenError("Cannot modify another user's profile")
    return update_user_profile(ctx, user_id, **body.model_dump(exclude_unset=True))
