import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from subscription_reconciler.app import create_app
from subscription_reconciler.config import Settings
from subscription_reconciler.entitlement_client import EntitlementStatus
from subscription_reconciler.models import subscription  # noqa: F401
from subscription_reconciler.models.base import Base, make_session_factory
from subscription_reconciler.store import SubscriptionStore


class FakeEntitlementClient:
    """Stands in for LiveEntitlementClient; returns canned results per user."""

    def __init__(self):
        self.results = {}
        self.calls = []

    async def check(self, user_id, now=None):
        self.calls.append(user_id)
        return self.results.get(user_id, EntitlementStatus(user_id=user_id))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    session = make_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def store(db_session):
    return SubscriptionStore(db_session)


@pytest.fixture
def entitlement_client():
    return FakeEntitlementClient()


@pytest.fixture
def client(engine, entitlement_client, monkeypatch):
    monkeypatch.setenv("DB_AUTO_CREATE", "false")
    monkeypatch.delenv("REVENUECAT_API_KEY", raising=False)
    app = create_app(Settings(), engine=engine, entitlement_client=entitlement_client)
    return TestClient(app)
