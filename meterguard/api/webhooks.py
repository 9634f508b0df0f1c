"""
Gateway webhook route.

POST /api/webhooks/cashfree

The body is read raw: the signature covers the exact delivered bytes.
Responds {"success": true} for every verified delivery. Activation failures
answer 500 so the gateway redelivers.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from meterguard.core.auth import get_billing_context
from meterguard.core.context import BillingContext
from meterguard.features.billing.webhooks import process_webhook


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/cashfree")
async def cashfree_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    x_webhook_timestamp: Optional[str] = Header(None),
    ctx: BillingContext = Depends(get_billing_context),
):
    body = await request.body()
    outcome = await run_in_threadpool(process_webhook, ctx, body, x_webhook_signature, x_webhook_timestamp)
    return {"success": True, "event_type": outcome.event_type, "action": outcome.action}
