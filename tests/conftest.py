"""
Global pytest fixtures for the enforcement worker test suite.

Provides:
- Test settings (no .env, fast timeouts, fake rule engine URL)
- Async SQLite engine on a temporary file with the full schema
- Session maker and repository bound to that engine
"""
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Set test environment BEFORE any finopsbridge imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RULE_ENGINE_URL"] = "http://opa.test:8181"


def _register_models() -> None:
    # Import all models to register them with the declarative metadata
    import finopsbridge.models  # noqa: F401


_register_models()


@pytest.fixture
def settings():
    from finopsbridge.shared.core.config import Settings
    from tests.utils import RULE_ENGINE_URL

    return Settings(
        _env_file=None,
        TESTING=True,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        RULE_ENGINE_URL=RULE_ENGINE_URL,
        RULE_EVAL_TIMEOUT_SECONDS=1.0,
        BILLING_TIMEOUT_SECONDS=1.0,
        REMEDIATION_TIMEOUT_SECONDS=1.0,
        WEBHOOK_TIMEOUT_SECONDS=1.0,
    )


@pytest_asyncio.fixture
async def async_engine(tmp_path) -> AsyncGenerator:
    """Async SQLite engine on a temporary file, schema created."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from finopsbridge.shared.db.base import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine):
    from finopsbridge.shared.db.session import create_session_maker

    return create_session_maker(async_engine)


@pytest_asyncio.fixture
async def repository(session_maker):
    from finopsbridge.modules.enforcement.domain.repository import EnforcementRepository

    return EnforcementRepository(session_maker)
