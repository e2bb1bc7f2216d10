"""Shared fixtures: in-memory and file-backed databases, the entitlement store and configs."""

import pytest
import pytest_asyncio
from hypothesis import HealthCheck, settings

from entitlement_sync.core.config import AuthConfig
from entitlement_sync.core.database import Database
from entitlement_sync.modules.billing.repository import EntitlementStore

from factories import SECRET_KEY, billing_config

# Regex strategies with lookaheads filter heavily; that is expected, not a defect.
settings.register_profile("default", suppress_health_check=[HealthCheck.filter_too_much])
settings.load_profile("default")


@pytest.fixture
def config():
    return billing_config()


@pytest.fixture
def auth_config():
    return AuthConfig(secret_key=SECRET_KEY)


@pytest_asyncio.fixture
async def database():
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def store(database):
    return EntitlementStore(database.session_maker, timeout_seconds=5.0)


@pytest_asyncio.fixture
async def file_database(tmp_path):
    """File-backed SQLite: one connection per session, so writers really race."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}")
    await db.create_all()
    yield db
    await db.dispose()
