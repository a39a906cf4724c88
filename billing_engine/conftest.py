# billing_engine/conftest.py
import os

import pytest

from billing_engine.core.config import Settings
from billing_engine.core.retry import RetryPolicy
from billing_engine.features.billing.plans import build_plan_catalog
from billing_engine.tests.mocks import FakeClock, FakeProcessor, no_sleep

os.environ.setdefault("SKIP_ENV_VALIDATION", "1")


@pytest.fixture
def test_settings():
    """Settings pinned for tests; never read from a developer's .env."""
    return Settings(
        _env_file=None,
        ENV="test",
        PAYMENT_PROCESSOR="stripe",
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test_123",
        PAYPAL_CLIENT_ID="paypal_client",
        PAYPAL_CLIENT_SECRET="paypal_secret",
        GRACE_PERIOD_DAYS=7,
        STORE_WRITE_MAX_ATTEMPTS=3,
    )


@pytest.fixture
def plan_catalog(test_settings):
    return build_plan_catalog(test_settings)


@pytest.fixture
def db():
    """
    Fresh in-memory SQLite database per test.

    Rebinds the module-level engine so SqlAccountStore's default session
    scope points at it.
    """
    from billing_engine.core.database import create_all_tables, drop_all_tables, init_engine

    init_engine("sqlite://")
    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture
def store(db):
    from billing_engine.features.billing.repository import SqlAccountStore

    return SqlAccountStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def manager(processor, store, test_settings, plan_catalog, clock):
    from billing_engine.features.billing.service import SubscriptionLifecycleManager

    return SubscriptionLifecycleManager(
        processor,
        store,
        cfg=test_settings,
        plans=plan_catalog,
        clock=clock,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, timeout=5),
        sleep=no_sleep,
    )
