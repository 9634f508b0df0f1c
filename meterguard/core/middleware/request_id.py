"""
Request correlation middleware.

Every request gets an id (the caller's x-request-id, or a fresh uuid4) that is
echoed on the response and bound to the logging context, so log_event calls
made while serving the request carry it. One request.complete line is written
per request with the authenticated user when auth resolved one.
"""
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from meterguard.core.logging import latency_bucket_ms, log_event, request_id_ctx_var

REQUEST_ID_HEADER = "x-request-id"


def _request_fields(request: Request, started: float) -> dict:
    return {
        "path": request.url.path,
        "method": request.method,
        "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
    }


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                log_event(
                    "error",
                    "request.failed",
                    user_id=getattr(request.state, "user_id", None),
                    error_code="internal_error",
                    extra=_request_fields(request, started),
                )
                raise

            response.headers[self.header_name] = rid
            log_event(
                "info",
                "request.complete",
                user_id=getattr(request.state, "user_id", None),
                extra={**_request_fields(request, started), "status": response.status_code},
            )
            return response
        finally:
            # Reset only after logging; log_event reads the id from the context
            request_id_ctx_var.reset(token)
