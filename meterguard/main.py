import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from meterguard.core.config import Settings, settings, validate_config
from meterguard.core.context import BillingContext, build_context
from meterguard.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from meterguard.core.logging import LOGGER_NAME, configure_logging
from meterguard.core.middleware.request_id import RequestIdMiddleware
from meterguard.api import ai, health, payments, plans, users, webhooks


def create_app(context: Optional[BillingContext] = None, settings_obj: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Pass a ready BillingContext (tests) to skip building one from settings.
    A context built here is owned by the app and closed on shutdown.
    """
    cfg = context.settings if context is not None else (settings_obj or settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger(LOGGER_NAME)
        logger.info("Starting meterguard...")
        owned = None
        if getattr(app.state, "billing_context", None) is None:
            owned = build_context(cfg)
            app.state.billing_context = owned
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
            logging.getLogger(LOGGER_NAME).info("Stopping meterguard...")

    app = FastAPI(title="meterguard", lifespan=lifespan)
    app.state.billing_context = context

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(payments.router, prefix="/api", tags=["payments"])
    app.include_router(webhooks.router, prefix="/api", tags=["webhooks"])
    app.include_router(plans.router, prefix="/api", tags=["plans"])
    app.include_router(users.router, prefix="/api", tags=["users"])
    app.include_router(ai.router, tags=["ai"])
    app.include_router(health.root_router, tags=["health"])
    return app


def build_default_app() -> FastAPI:
    configure_logging(settings.ENV, settings.LOG_LEVEL)
    validate_config(strict=settings.CONFIG_STRICT)
    return create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(build_default_app(), host="0.0.0.0", port=8000)
