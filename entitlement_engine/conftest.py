# entitlement_engine/conftest.py
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# File-backed SQLite so worker threads share one database.
# Must be set before the engine is first created.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="entitlements-tests-")
os.environ.setdefault("TEST_DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}")


@pytest.fixture(scope="session")
def db_url():
    """Database URL the tests run against."""
    return os.environ["TEST_DATABASE_URL"]


@pytest.fixture(scope="function", autouse=True)
def _reset_db(db_url):
    """
    Reset database before each test.

    Drops and recreates every table so each test starts from an empty store.
    """
    from entitlement_engine.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def test_settings():
    """Settings with short timeouts for tests."""
    from entitlement_engine.core.config import Settings

    return Settings(
        GATEWAY_TIMEOUT_SECONDS=0.5,
        CATALOG_CACHE_TTL_SECONDS=0.0,
        CRON_SECRET="test-cron-secret",
        STRIPE_SECRET_KEY=None,
        STRIPE_WEBHOOK_SECRET=None,
        RECONCILER_ENABLED=False,
    )


@pytest.fixture
def catalog(test_settings):
    """Seeded catalog with caching disabled."""
    from entitlement_engine.features.catalog.service import EntitlementCatalog, seed_plans

    seed_plans()
    return EntitlementCatalog(ttl_seconds=0, free_plan_id=test_settings.FREE_PLAN_ID)


@pytest.fixture
def meter(test_settings):
    from entitlement_engine.features.usage.service import UsageMeter

    return UsageMeter(max_retries=test_settings.USAGE_INCREMENT_RETRIES)


@pytest.fixture
def state_machine(test_settings):
    from entitlement_engine.features.subscriptions.state_machine import SubscriptionStateMachine

    return SubscriptionStateMachine(test_settings)


@pytest.fixture
def subscription_service(catalog, state_machine, test_settings):
    from entitlement_engine.features.subscriptions.service import SubscriptionService

    return SubscriptionService(catalog, state_machine, test_settings)


@pytest.fixture
def resolver(catalog, meter, subscription_service):
    from entitlement_engine.features.entitlements.service import EntitlementResolver

    return EntitlementResolver(catalog, meter, subscription_service)


@pytest.fixture
def fake_gateway():
    from entitlement_engine.tests.mocks import FakeGateway

    return FakeGateway()


@pytest.fixture
def recorded_events():
    from entitlement_engine.features.billing.events import EventBus, RecordingSubscriber

    bus = EventBus()
    recorder = RecordingSubscriber()
    bus.subscribe(recorder)
    return bus, recorder


@pytest.fixture
def reconciler(fake_gateway, catalog, recorded_events, test_settings, state_machine):
    from entitlement_engine.features.billing.reconciler import RenewalReconciler

    bus, _ = recorded_events
    instance = RenewalReconciler(fake_gateway, catalog, bus, test_settings, state_machine)
    yield instance
    instance.close()


@pytest.fixture
def services(fake_gateway, test_settings):
    """Engine wiring backed by the fake gateway."""
    from entitlement_engine.core.container import build_services
    from entitlement_engine.features.catalog.service import seed_plans

    seed_plans()
    engine_services = build_services(gateway=fake_gateway, settings=test_settings)
    yield engine_services
    engine_services.close()


@pytest.fixture
def client(services):
    from fastapi.testclient import TestClient

    from entitlement_engine.main import create_app

    app = create_app(services=services, start_scheduler=False)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def cron_headers(test_settings):
    return {"X-Cron-Secret": test_settings.CRON_SECRET}
