# meterguard/conftest.py
import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from meterguard.core.config import Settings
from meterguard.core.context import build_context
from meterguard.core.database import drop_all_tables
from meterguard.features.plans.service import create_plan
from meterguard.features.users.service import create_user
from meterguard.main import create_app
from meterguard.models.user import UserRole
from meterguard.tests.mocks import TEST_JWT_SECRET, WEBHOOK_SECRET, FakeCapability, FakeGateway


@pytest.fixture
def test_settings():
    """
    Settings isolated from the developer's .env file.

    Runs against in-memory SQLite unless TEST_DATABASE_URL points at a
    real database.
    """
    test_db_url = os.getenv("TEST_DATABASE_URL")
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL=test_db_url or "sqlite:///:memory:",
        TEST_DATABASE_URL=test_db_url,
        CASHFREE_APP_ID="test-app-id",
        CASHFREE_SECRET_KEY=WEBHOOK_SECRET,
        DEFAULT_FREE_TRIAL=3,
        JWT_SECRET_KEY=TEST_JWT_SECRET,
        ALLOW_HEADER_AUTH=True,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def capability():
    return FakeCapability()


@pytest.fixture
def ctx(test_settings, gateway, capability):
    """
    Fresh BillingContext per test.

    StaticPool keeps a single in-memory SQLite connection, so every session
    sees the same database. Tables are dropped on teardown so a shared
    TEST_DATABASE_URL starts clean for the next test.
    """
    context = build_context(test_settings, gateway=gateway, capability_runner=capability)
    yield context
    drop_all_tables(context.engine)
    context.close()


@pytest.fixture
def make_user(ctx):
    counter = {"n": 0}

    def _make(free_trial=0, role=UserRole.USER, email=None, name="Test User", phone=None):
        counter["n"] += 1
        return create_user(
            ctx,
            email or f"user{counter['n']}@example.com",
            name=name,
            phone=phone,
            role=role,
            free_trial=free_trial,
        )

    return _make


@pytest.fixture
def admin_user(make_user):
    return make_user(role=UserRole.ADMIN, email="admin@example.com")


@pytest.fixture
def make_order_plan(ctx):
    def _make(limit_number=10, amount="199.00", is_limited=True, name="Top-up pack"):
        return create_plan(
            ctx,
            {
                "name": name,
                "plan_type": "ORDER",
                "amount": Decimal(amount),
                "is_limited": is_limited,
                "limit_number": limit_number,
            },
        )

    return _make


@pytest.fixture
def make_subscription_plan(ctx):
    def _make(limit_number=50, amount="499.00", intervals=1, interval_type="MONTH", is_limited=True, name="Pro monthly"):
        return create_plan(
            ctx,
            {
                "name": name,
                "plan_type": "SUBSCRIPTION",
                "amount": Decimal(amount),
                "is_limited": is_limited,
                "limit_number": limit_number,
                "intervals": intervals,
                "interval_type": interval_type,
                "max_cycles": 12,
            },
        )

    return _make


@pytest.fixture
def client(ctx):
    app = create_app(context=ctx)
    with TestClient(app) as test_client:
        yield test_client
