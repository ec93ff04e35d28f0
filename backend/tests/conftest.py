import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from sitswap.domain.bookings import db_models as booking_db_models  # noqa: F401
from sitswap.domain.jobs import db_models as job_db_models  # noqa: F401
from sitswap.domain.notifications import db_models as notification_db_models  # noqa: F401
from sitswap.domain.ops import db_models as ops_db_models  # noqa: F401
from sitswap.domain.payments import db_models as payment_db_models  # noqa: F401
from sitswap.domain.points import db_models as points_db_models  # noqa: F401
from sitswap.infra.db import Base, get_db_session
from sitswap.main import app
from sitswap.settings import settings

_RESTORED_SETTINGS = (
    "app_env",
    "testing",
    "stripe_secret_key",
    "stripe_webhook_secret",
    "payment_currency",
    "allow_manual_booking_payments",
    "settlement_legacy_fallback_enabled",
    "email_mode",
    "allow_email_log_fallback",
    "public_base_url",
)


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {name: getattr(settings, name) for name in _RESTORED_SETTINGS}
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.email_mode = "off"
    settings.stripe_secret_key = None
    settings.stripe_webhook_secret = None
    yield


@pytest.fixture(autouse=True)
def restore_app_state():
    """Drop per-test gateway doubles so they never leak into the next test."""
    yield
    for name in ("stripe_client", "email_adapter"):
        if hasattr(app.state, name):
            delattr(app.state, name)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture()
def client_no_raise(async_session_maker):
    """Test client that returns HTTP responses instead of raising server exceptions."""

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
