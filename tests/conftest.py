"""
Shared fixtures for the commit sync test suite.

Storage runs against an in-memory SQLite database and the host API is replaced
by ``FakeHost``.
"""

import pytest
import pytest_asyncio

from config.settings import Settings, SyncSettings
from shared.database import DatabaseManager, Stores
from services.commit_sync.engine import CommitSyncEngine

from fakes import FakeHost, START


@pytest.fixture
def test_settings():
    """Settings for the testing environment."""
    return Settings(environment="testing")


@pytest_asyncio.fixture
async def db(test_settings):
    """Fresh in-memory database with all tables."""
    manager = DatabaseManager("sqlite+aiosqlite:///:memory:", config=test_settings)
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def stores(db):
    return Stores(db)


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def engine(stores, host):
    """Sync engine over the fake host with a fixed start time."""
    return CommitSyncEngine(stores, host, SyncSettings(), clock=lambda: START)
