"""Pytest configuration and fixtures for the lifecycle email test suite.

Provides:
- Per-test SQLite database (aiosqlite) with all tables created
- Mock authentication (JWT bypass) for a regular and an admin user
- Mock Redis (fakeredis)
- Disabled rate limiting
- A recording scheduler in place of Celery
- Analytics tracking patched so no task is sent to a broker
- Model factory fixtures for Profile, ScheduledEmail and UnsubscribeToken
"""

from collections.abc import AsyncGenerator, Callable, Generator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.auth import get_current_user
from app.core.database import get_async_session
from app.core.deps import get_db, get_redis
from app.core.rate_limit import limiter
from app.main import app
from app.models.base import Base
from app.models.profile import Profile
from app.models.scheduled_email import EmailType, ScheduledEmail, ScheduledEmailStatus
from app.models.unsubscribe_token import UnsubscribeToken
from app.services.email_service import EmailService
from app.services.sequence_service import build_idempotency_key
from app.workers.scheduler import get_scheduler
from app.workers.tasks import email as email_tasks

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
TEST_USER_ID = "test-user-id"
TEST_USER_EMAIL = "test@example.com"
ADMIN_USER_ID = "admin-user-id"
ADMIN_USER_EMAIL = "admin@example.com"

# ---------------------------------------------------------------------------
# Disable rate limiting globally for tests
# ---------------------------------------------------------------------------
limiter.enabled = False


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database file per test with every table created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Database session shared by the test body and the app under test."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Fake Redis
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    """Provide a fresh fakeredis instance per test."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


# ---------------------------------------------------------------------------
# Scheduler and side-effect mocks
# ---------------------------------------------------------------------------


class FakeScheduler:
    """Records schedule/cancel calls instead of talking to Celery."""

    def __init__(self) -> None:
        self.scheduled: list[ScheduledEmail] = []
        self.cancelled: list[str] = []
        self.fail_schedule = False

    def schedule(self, email: ScheduledEmail) -> str:
        if self.fail_schedule:
            raise ConnectionError("broker unavailable")
        self.scheduled.append(email)
        return f"task-{email.idempotency_key}-{email.retry_count}"

    def cancel(self, task_ids: Sequence[str]) -> None:
        self.cancelled.extend(task_ids)


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture(autouse=True)
def mock_tracking() -> Generator[MagicMock, None, None]:
    """Capture analytics events instead of queueing Celery tasks."""
    with patch.object(email_tasks.track_analytics_event, "delay") as mock_delay:
        yield mock_delay


@pytest.fixture
def mock_resend() -> AsyncMock:
    """EmailService stand-in that accepts every message."""
    service = AsyncMock(spec=EmailService)
    service.send_email.return_value = "re_test_123"
    return service


# ---------------------------------------------------------------------------
# Auth mock
# ---------------------------------------------------------------------------


@pytest.fixture
def auth_user() -> dict[str, Any]:
    """Return the default authenticated test user payload (mimics decoded JWT)."""
    return {"sub": TEST_USER_ID, "email": TEST_USER_EMAIL}


@pytest.fixture
def admin_user() -> dict[str, Any]:
    return {"sub": ADMIN_USER_ID, "email": ADMIN_USER_EMAIL}


def _override_dependencies(
    db_session: AsyncSession,
    fake_redis: fakeredis.aioredis.FakeRedis,
    fake_scheduler: FakeScheduler,
    user: dict[str, Any] | None,
) -> None:
    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def _override_redis() -> AsyncGenerator[fakeredis.aioredis.FakeRedis, None]:
        yield fake_redis

    app.dependency_overrides[get_async_session] = _override_session
    app.dependency_overrides[get_db] = _override_session
    app.dependency_overrides[get_redis] = _override_redis
    app.dependency_overrides[get_scheduler] = lambda: fake_scheduler

    if user is not None:

        async def _override_user() -> dict[str, Any]:
            return user

        app.dependency_overrides[get_current_user] = _override_user


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    fake_redis: fakeredis.aioredis.FakeRedis,
    fake_scheduler: FakeScheduler,
    auth_user: dict[str, Any],
) -> AsyncGenerator[AsyncClient, None]:
    """Client authenticated as a regular (non-admin) user."""
    _override_dependencies(db_session, fake_redis, fake_scheduler, auth_user)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_client(
    db_session: AsyncSession,
    fake_redis: fakeredis.aioredis.FakeRedis,
    fake_scheduler: FakeScheduler,
    admin_user: dict[str, Any],
) -> AsyncGenerator[AsyncClient, None]:
    """Client authenticated as a user whose profile has ``is_admin`` set."""
    db_session.add(Profile(user_id=ADMIN_USER_ID, email=ADMIN_USER_EMAIL, is_admin=True))
    await db_session.commit()

    _override_dependencies(db_session, fake_redis, fake_scheduler, admin_user)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def unauthed_client(
    db_session: AsyncSession,
    fake_redis: fakeredis.aioredis.FakeRedis,
    fake_scheduler: FakeScheduler,
) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client. Auth is NOT overridden."""
    _override_dependencies(db_session, fake_redis, fake_scheduler, None)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def plain_client() -> AsyncGenerator[AsyncClient, None]:
    """Minimal async test client with NO dependency overrides."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Model Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def profile_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates Profile instances."""

    async def _create(
        *,
        user_id: str = TEST_USER_ID,
        email: str = TEST_USER_EMAIL,
        first_name: str | None = "Jamie",
        is_admin: bool = False,
        onboarding_completed_at: datetime | None = None,
        subscription_status: str | None = None,
    ) -> Profile:
        profile = Profile(
            user_id=user_id,
            email=email,
            first_name=first_name,
            is_admin=is_admin,
            onboarding_completed_at=onboarding_completed_at,
            subscription_status=subscription_status,
        )
        db_session.add(profile)
        await db_session.commit()
        await db_session.refresh(profile)
        return profile

    return _create


@pytest.fixture
def scheduled_email_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates ScheduledEmail rows directly (bypassing triggers)."""

    async def _create(
        *,
        user_id: str = TEST_USER_ID,
        email_address: str = TEST_USER_EMAIL,
        flow_id: str = "trial_sequence",
        step_index: int = 0,
        template_id: str = "trial_welcome",
        email_type: EmailType = EmailType.MARKETING,
        status: ScheduledEmailStatus = ScheduledEmailStatus.PENDING,
        scheduled_at: datetime | None = None,
        flow_trigger_id: str = "test-trigger",
        retry_count: int = 0,
        is_test: bool = False,
        variables: dict[str, Any] | None = None,
        updated_at: datetime | None = None,
    ) -> ScheduledEmail:
        email = ScheduledEmail(
            user_id=user_id,
            email_address=email_address,
            flow_id=flow_id,
            step_index=step_index,
            template_id=template_id,
            email_type=email_type,
            status=status,
            scheduled_at=scheduled_at or datetime.now(UTC),
            flow_trigger_id=flow_trigger_id,
            idempotency_key=build_idempotency_key(user_id, flow_id, step_index, flow_trigger_id),
            retry_count=retry_count,
            is_test=is_test,
            variables=variables or {"first_name": "Jamie"},
        )
        if updated_at is not None:
            email.updated_at = updated_at
        db_session.add(email)
        await db_session.commit()
        await db_session.refresh(email)
        return email

    return _create


@pytest.fixture
def token_factory(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory that creates UnsubscribeToken rows with a chosen state."""

    async def _create(
        *,
        token: str = "a" * 64,
        user_id: str = TEST_USER_ID,
        email_address: str = TEST_USER_EMAIL,
        expires_in: timedelta = timedelta(days=30),
        used: bool = False,
    ) -> UnsubscribeToken:
        now = datetime.now(UTC)
        row = UnsubscribeToken(
            token=token,
            user_id=user_id,
            email_address=email_address,
            expires_at=now + expires_in,
            used_at=now if used else None,
        )
        db_session.add(row)
        await db_session.commit()
        return row

    return _create
