"""Metered AI capability route.

POST /v1/ai/redesign-room runs the injected capability behind the
entitlement guard. A trial or usage unit is consumed only after the
capability returned successfully.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from meterguard.core.auth import get_billing_context, get_current_user_id
from meterguard.core.context import BillingContext
from meterguard.core.errors import AppError
from meterguard.core.logging import get_request_id, log_event
from meterguard.features.entitlements.service import consume_access, require_access

router = APIRouter(prefix="/v1/ai", tags=["ai"])


class RedesignRoomRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=2000)
    image_url: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


@router.post("/redesign-room")
def redesign_room_endpoint(
    body: RedesignRoomRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    ctx: BillingContext = Depends(get_billing_context),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()

    decision = require_access(ctx, user_id)

    if ctx.capability_runner is None:
        raise AppError("AI capability is not configured", code="capability_unavailable", status_code=503, request_id=rid)

    result = ctx.capability_runner(user_id, body.model_dump())

    consumed = consume_access(ctx, user_id, decision)
    log_event(
        "info",
        "[ai] redesign-room completed",
        user_id=user_id,
        extra={"tag": decision.tag.value, "consumed": consumed},
    )
    return {"data": result, "usage": {"tag": decision.tag.value, "consumed": consumed}, "request_id": rid}
