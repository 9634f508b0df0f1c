"""
BillingContext: the collaborators every billing operation needs.

The process entry point (main.py lifespan, or a test fixture) builds one
context and passes it explicitly to each service call. Services never reach
for a module-level engine or gateway client.
"""
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from meterguard.core.config import Settings, billing_enabled, settings as default_settings
from meterguard.core.database import (
    build_session_factory,
    create_all_tables,
    create_db_engine,
    session_scope,
)
from meterguard.core.errors import BillingDisabledError
from meterguard.features.gateway.provider import PaymentGatewayClient

# Runs the metered capability for a user and returns its JSON-able result
CapabilityRunner = Callable[[str, Dict[str, Any]], Dict[str, Any]]


@dataclass
class BillingContext:
    session_factory: sessionmaker
    settings: Settings
    gateway: Optional[PaymentGatewayClient] = None
    capability_runner: Optional[CapabilityRunner] = None
    engine: Optional[Engine] = None

    @contextmanager
    def session(self) -> Iterator[Session]:
        """One transaction: commit on success, rollback on error."""
        with session_scope(self.session_factory) as session:
            yield session

    def require_gateway(self) -> PaymentGatewayClient:
        if self.gateway is None:
            raise BillingDisabledError("Payment gateway is not configured")
        return self.gateway

    def close(self) -> None:
        if self.gateway is not None:
            self.gateway.close()
        if self.engine is not None:
            self.engine.dispose()


def build_context(
    settings_obj: Optional[Settings] = None,
    *,
    database_url: Optional[str] = None,
    gateway: Optional[PaymentGatewayClient] = None,
    capability_runner: Optional[CapabilityRunner] = None,
    create_tables: bool = True,
) -> BillingContext:
    """
    Build a context from settings.

    A Cashfree gateway is created when credentials are configured and no
    gateway was passed in. Without one, payment routes answer 503.
    """
    cfg = settings_obj or default_settings
    engine = create_db_engine(database_url or cfg.DATABASE_URL)
    if create_tables:
        create_all_tables(engine)

    if gateway is None and billing_enabled(cfg):
        from meterguard.features.gateway.cashfree_provider import CashfreeProvider
        gateway = CashfreeProvider.from_settings(cfg)

    return BillingContext(
        session_factory=build_session_factory(engine),
        settings=cfg,
        gateway=gateway,
        capability_runner=capability_runner,
        engine=engine,
    )
