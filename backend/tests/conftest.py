"""
Pytest configuration and shared fixtures for backend tests.
"""
import os

# Keep the app from touching a real database or starting background loops
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pushrelay import models  # noqa: F401  registers tables on Base.metadata
from pushrelay.config import Settings
from pushrelay.core.database import Base, get_db
from pushrelay.core.retry import RetryConfig
from pushrelay.core.services import build_services
from pushrelay.core.transport import VapidCredentials, VapidKeyring
from pushrelay.main import app
from pushrelay.models import Device, NotificationPreference, Subscription


class FakeTransport:
    """
    In-memory push transport.

    ``errors`` maps an endpoint to an exception raised on every send, or to a
    list of exceptions raised one per send before succeeding.
    """

    def __init__(self):
        self.sent = []
        self.errors = {}

    async def send_notification(self, subscription_info, data, ttl, urgency=None, topic=None):
        endpoint = subscription_info["endpoint"]
        self.sent.append(
            {"endpoint": endpoint, "data": data, "ttl": ttl, "urgency": urgency, "topic": topic}
        )
        err = self.errors.get(endpoint)
        if isinstance(err, list):
            if err:
                raise err.pop(0)
        elif err is not None:
            raise err
        return {"status_code": 201}

    def sent_to(self, endpoint):
        return [s for s in self.sent if s["endpoint"] == endpoint]


# Same attempt counts as production, without waiting between them
INSTANT_RETRIES = RetryConfig(base_delay_ms=0, jitter=False)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        scheduler_enabled=False,
        vapid_subject="mailto:ops@example.com",
    )


@pytest.fixture
def services(test_settings, transport):
    keyring = VapidKeyring(
        VapidCredentials(public_key="test-public-key", private_key="test-private-key", subject="mailto:ops@example.com")
    )
    return build_services(
        test_settings,
        transport=transport,
        keyring=keyring,
        retry_config=INSTANT_RETRIES,
    )


@pytest.fixture
def client(db, services):
    """TestClient for the app, bound to the test session and services."""
    previous = app.state.services
    app.state.services = services
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        app.state.services = previous


@pytest.fixture
def make_subscription(db):
    """Factory creating a subscription, optionally with a device and preferences."""
    counter = {"n": 0}

    def _make(status="active", device=None, preference=None):
        counter["n"] += 1
        n = counter["n"]
        sub = Subscription(
            endpoint=f"https://push.example.com/send/{n}",
            p256dh=f"p256dh-{n}",
            auth=f"auth-{n}",
            status=status,
        )
        db.add(sub)
        db.commit()
        db.refresh(sub)

        if device is not None:
            db.add(Device(subscription_id=sub.id, **device))
        if preference is not None:
            db.add(NotificationPreference(subscription_id=sub.id, **preference))
        db.commit()
        return sub

    return _make


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, 0)
