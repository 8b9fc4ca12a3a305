"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database:
1. The schema is created on a new engine per test
2. One AsyncSession is shared by the test and every request it makes
3. The legacy ERP, the email channel and the clock are replaced by fakes
"""

import asyncio
import json
import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load test environment variables before the settings singleton is created
test_env_path = Path(__file__).parent.parent / ".env.test"
load_dotenv(test_env_path, override=True)

os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.database.base import Base  # noqa: E402
from src.database.client import build_engine  # noqa: E402
from src.database.dependencies import get_db_session  # noqa: E402
from src.features.auth.dependencies import get_clock, get_identity_gateway, get_notifier  # noqa: E402
from src.features.auth.service import AuthService  # noqa: E402
from src.features.identity.exceptions import LegacyGatewayUnavailable, LegacyTokenRejected  # noqa: E402
from src.features.identity.schemas import LegacyIdentity  # noqa: E402
from src.main import app  # noqa: E402

DEFAULT_PASSWORD = "Secret123!"
ERP_PASSWORD = "ErpPass123"


# Fakes


class FakeClock:
    """Controllable clock. Starts at the real current time."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeLegacyGateway:
    """In-memory legacy ERP: QR tokens map to identities, refs to ERP passwords."""

    def __init__(self):
        self.tokens: dict[str, LegacyIdentity] = {}
        self.passwords: dict[str, str] = {}
        self.unavailable = False
        self.delay = 0.0
        self.validated: list[str] = []

    def enroll(self, identity: LegacyIdentity, token: str, password: str = ERP_PASSWORD) -> str:
        self.tokens[token] = identity
        self.passwords[identity.ref] = password
        return token

    async def validate_token(self, token: str) -> LegacyIdentity:
        self.validated.append(token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise LegacyGatewayUnavailable("legacy ERP down")
        identity = self.tokens.get(token)
        if identity is None:
            raise LegacyTokenRejected("unknown token")
        return identity

    async def verify_password(self, identity_ref: str, password: str) -> bool:
        if self.unavailable:
            raise LegacyGatewayUnavailable("legacy ERP down")
        return self.passwords.get(identity_ref) == password


class RecordingNotifier:
    """Captures verification codes instead of sending email."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.deliver = True
        self.error: Exception | None = None

    async def send_verification_code(self, email: str, code: str, name: str) -> bool:
        if self.error is not None:
            raise self.error
        self.sent.append((email, code, name))
        return self.deliver

    def last_code(self, email: str) -> str:
        for sent_email, code, _name in reversed(self.sent):
            if sent_email == email:
                return code
        raise AssertionError(f"No code sent to {email}")


# Database Setup - fresh per test


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine with the schema created.

    StaticPool keeps the single in-memory database alive across connections.
    """
    engine = build_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    async_session = AsyncSession(bind=db_engine, expire_on_commit=False)
    try:
        yield async_session
    finally:
        await async_session.close()


# Collaborators


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeLegacyGateway:
    return FakeLegacyGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def auth_service(session: AsyncSession, gateway: FakeLegacyGateway, notifier: RecordingNotifier, clock: FakeClock):
    return AuthService(session, gateway, notifier, clock)


# FastAPI Client & Dependency Overrides


@pytest_asyncio.fixture(autouse=True)
async def override_dependencies(
    session: AsyncSession, gateway: FakeLegacyGateway, notifier: RecordingNotifier, clock: FakeClock
):
    """Route every request through the test session and the fakes."""

    async def _get_test_session():
        yield session

    app.dependency_overrides[get_db_session] = _get_test_session
    app.dependency_overrides[get_identity_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Identity Factories


@pytest.fixture
def make_identity(gateway: FakeLegacyGateway):
    """Factory enrolling a legacy identity and returning (identity, qr_data).

    Usage:
        identity, qr_data = make_identity()
        identity, qr_data = make_identity(ref="usr_7_mobile", email="x@acme-logistics.com")
    """
    counter = 0

    def _factory(ref=None, username=None, email=None, name="Test Driver", phone="+15550100", is_active=True):
        nonlocal counter
        counter += 1
        identity = LegacyIdentity(
            ref=ref or f"{1000 + counter}",
            username=username or f"driver{counter}",
            email=email or f"driver{counter}@acme-logistics.com",
            name=name,
            phone=phone,
            is_active=is_active,
        )
        token = gateway.enroll(identity, f"qr-token-{counter}")
        qr_data = json.dumps({"qrToken": token, "userId": identity.ref, "email": identity.email})
        return identity, qr_data

    return _factory


@pytest_asyncio.fixture
async def register(auth_service: AuthService, notifier: RecordingNotifier, session: AsyncSession):
    """Run scan, code verification and password setup for an identity.

    Returns the new account id.
    """

    async def _register(identity: LegacyIdentity, qr_data: str, password: str = DEFAULT_PASSWORD):
        await auth_service.scan_entry(qr_data)
        await auth_service.verify_code(identity.email, notifier.last_code(identity.email))
        result = await auth_service.complete_registration(identity.email, password, password)
        await session.commit()
        return result.data.user_id

    return _register


@pytest.fixture
def local_passwords(monkeypatch):
    """Check login passwords against the stored mobile password hash."""
    from src.config.settings import settings

    monkeypatch.setattr(settings, "password_authority", "local")
