"""Root-level pytest fixtures for all tests.

Provides shared fixtures including:
- File-based SQLite databases (one connection per concurrent query)
- Warn-once reset between tests
"""

import pytest

from src.infrastructure.database import (
    close_database,
    create_tables,
    get_engine,
    get_session_maker,
    init_database,
)
from src.shared.infrastructure.logging import reset_warn_once


@pytest.fixture(autouse=True)
def _reset_warn_once():
    """Every test starts with a clean warn-once key set."""
    reset_warn_once()
    yield
    reset_warn_once()


@pytest.fixture
def sqlite_url(tmp_path) -> str:
    """File-based SQLite URL; unlike :memory: it is shared across connections."""
    return f"sqlite+aiosqlite:///{tmp_path / 'ops.db'}"


@pytest.fixture
async def session_maker(sqlite_url):
    """Initialized database with all ops tables created."""
    init_database(sqlite_url)
    await create_tables()
    yield get_session_maker()
    await close_database()


@pytest.fixture
async def bare_session_maker(sqlite_url):
    """Initialized database with no tables; tests create their own schema."""
    init_database(sqlite_url)
    yield get_session_maker()
    await close_database()


@pytest.fixture
def engine(session_maker):
    return get_engine()
