import asyncio
import os
import sys
import time
from pathlib import Path

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool


# Ensure project root is on sys.path so `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Settings are read at import time: configure the environment first.
os.environ["DATABASE_URL"] = "disabled"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EXPIRY_SWEEP_INTERVAL_SEC"] = "0"
os.environ["RATE_LIMIT_CALLS"] = "100000"
os.environ["PUSH_TIMEOUT_SEC"] = "0.2"
os.environ["WS_AUTH_TIMEOUT_SEC"] = "1.0"


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.db import build_session_maker, get_db_session, init_models  # noqa: E402
from services.attendance_service import AttendanceLedger  # noqa: E402
from services.billing_service import BillingEngine  # noqa: E402
from services.channel_registry import ChannelRegistry  # noqa: E402
from services.notification_service import NotificationService  # noqa: E402
from services.subscription_service import SubscriptionLifecycle  # noqa: E402

OWNER_ID = "9000000001"
SUBSCRIBER_ID = "9998887777"
OTHER_SUBSCRIBER_ID = "9123456780"


class FakeChannel:
    """Stand-in for a WebSocket: records frames, can fail or stall on demand."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.sent = []
        self.closed = False

    async def send_json(self, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed = True


def make_token(subscriber_id: str, role: str = "user", name: str = "Test User", expires_in: int = 3600) -> str:
    payload = {"sub": subscriber_id, "role": role, "name": name, "exp": int(time.time()) + expires_in}
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def auth_headers(subscriber_id: str, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {make_token(subscriber_id, role)}"}


@pytest_asyncio.fixture()
async def engine():
    """Fresh in-memory SQLite database per test."""
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_maker(engine):
    return build_session_maker(engine)


@pytest_asyncio.fixture()
async def session(session_maker):
    async with session_maker() as s:
        yield s


@pytest.fixture()
def registry():
    return ChannelRegistry(push_timeout=0.2)


@pytest.fixture()
def notifier(session, registry):
    return NotificationService(session, registry)


@pytest.fixture()
def ledger(session, notifier):
    return AttendanceLedger(session, notifier)


@pytest.fixture()
def billing(session, ledger, notifier):
    return BillingEngine(session, ledger, notifier)


@pytest.fixture()
def lifecycle(session, notifier):
    return SubscriptionLifecycle(session, notifier)


@pytest.fixture()
def app(session_maker, registry):
    from main import create_app

    application = create_app()
    application.state.channel_registry = registry

    async def override_session():
        async with session_maker() as s:
            yield s

    application.dependency_overrides[get_db_session] = override_session
    return application


@pytest_asyncio.fixture()
async def client(app):
    """Async test client for the API, in-memory (no real HTTP server)."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.fixture()
def owner_headers():
    return auth_headers(OWNER_ID, role="owner")


@pytest.fixture()
def user_headers():
    return auth_headers(SUBSCRIBER_ID)
