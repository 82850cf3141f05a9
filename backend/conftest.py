# backend/conftest.py
import os

# Must be set before backend.core.config builds its Settings
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite://"
os.environ.setdefault("AUTH_SECRET", "test-auth-secret-0123456789abcdef")
os.environ.setdefault("APP_URL", "http://localhost:3000")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from backend.tests.mocks import FakeBillingProvider  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Reset database tables before each test.

    Tests run against a shared in-memory SQLite database, so drop and
    recreate everything to ensure clean state between tests.
    """
    from backend.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def plans():
    from backend.features.plans.registry import build_plan_registry
    from backend.tests.mocks import billing_settings

    return build_plan_registry(billing_settings())


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def store():
    from backend.features.billing.store import SubscriptionStore

    return SubscriptionStore()


@pytest.fixture
def billing_service(store, plans, provider):
    from backend.features.billing.service import BillingService

    return BillingService(store=store, plans=plans, provider=provider)


@pytest.fixture
def client(billing_service, plans, monkeypatch):
    """TestClient with the billing service and plan catalogue swapped for test doubles."""
    import backend.api.billing as billing_api
    from backend.features.billing.service import get_billing_service
    from backend.main import app

    monkeypatch.setattr(billing_api, "get_plan_registry", lambda: plans)
    app.dependency_overrides[get_billing_service] = lambda: billing_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
