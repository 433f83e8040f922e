"""Pytest fixtures: test client, test DB (in-memory SQLite), auth headers, fake push transport."""
import base64
import os

import pytest
from fastapi.testclient import TestClient

# Must be set before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("RATE_LIMIT_SEND_PER_MINUTE", "1000")
os.environ.setdefault(
    "VAPID_PUBLIC_KEY",
    base64.urlsafe_b64encode(b"\x04" + bytes(range(1, 65))).decode("ascii").rstrip("="),
)
os.environ.setdefault("VAPID_PRIVATE_KEY", "test-vapid-private-key")

from sqlalchemy import delete
from sqlmodel import Session

from app.api.deps import get_sender_factory
from app.core.database import engine, init_db
from app.core.security import create_access_token
from app.main import app
from app.models import PushBroadcast, PushSubscription
from app.services.fanout import FanoutSender
from app.services.payload import PayloadDefaults

from fakes import FakeTransport

ADMIN_SECRET = os.environ["ADMIN_SECRET"]
init_db()


@pytest.fixture(autouse=True)
def _clean_tables():
    """Shared in-memory DB: every test starts with empty tables."""
    yield
    with Session(engine) as s:
        s.exec(delete(PushSubscription))
        s.exec(delete(PushBroadcast))
        s.commit()
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client():
    """TestClient; lifespan runs init_db."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with Session(engine) as s:
        yield s


def token_for(user_id: str) -> str:
    return create_access_token({"sub": user_id})


@pytest.fixture
def auth_headers():
    """Bearer header factory: auth_headers("parent-1")."""

    def _make(user_id: str = "parent-1") -> dict[str, str]:
        return {"Authorization": f"Bearer {token_for(user_id)}"}

    return _make


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": ADMIN_SECRET}


@pytest.fixture
def defaults():
    return PayloadDefaults()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def fake_sender(transport):
    """Routes /push/send through FakeTransport instead of real push services."""
    sender = FanoutSender(transport, max_workers=4, endpoint_timeout=1.0, fanout_timeout=5.0, retry_backoff=0.0)
    app.dependency_overrides[get_sender_factory] = lambda: lambda: sender
    return sender
