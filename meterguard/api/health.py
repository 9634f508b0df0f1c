"""
Health endpoints.

- /healthz: liveness, no dependencies
- /readyz: database reachable and gateway configured
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from meterguard.core.auth import get_billing_context
from meterguard.core.context import BillingContext
from meterguard.core.database import check_connection

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(ctx: BillingContext = Depends(get_billing_context)):
    db_ok = ctx.engine is not None and check_connection(ctx.engine)
    payload = {"ok": db_ok, "db": db_ok, "billing_enabled": ctx.gateway is not None}
    return JSONResponse(status_code=200 if db_ok else 503, content=payload)
