"""Test fixtures and configuration."""

import logging
import os
import sys

# Point settings at SQLite before any bankrec module builds the global engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["ENVIRONMENT"] = "testing"

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bankrec.logger import get_logger
from bankrec.services import engine_config

logger = get_logger(__name__)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# --- Engine config cache ---
@pytest.fixture(autouse=True)
def reset_reconciliation_config_cache():
    """Drop the cached engine config so env/YAML overrides never leak between tests."""
    engine_config._config_cache = None
    yield
    engine_config._config_cache = None


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Route structlog through stdlib so caplog sees event dicts."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Fresh in-memory SQLite schema per test.

    build_engine applies StaticPool and the BEGIN hook, so every connection
    shares one database and SAVEPOINTs nest correctly.
    """
    from bankrec import models  # noqa: F401
    from bankrec.database import Base, build_engine

    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(db_engine, request):
    """Test session inside an outer transaction that is rolled back afterwards.

    The session joins the outer transaction through a SAVEPOINT, so services
    and routers may commit or roll back freely without leaking data.
    """
    from bankrec import database

    test_name = request.node.name
    connection = await db_engine.connect()
    transaction = await connection.begin()

    maker = async_sessionmaker(
        bind=connection,
        class_=AsyncSession,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    previous = database.set_test_session_maker(maker)
    session = maker()

    yield session

    try:
        await session.close()
    finally:
        database.set_test_session_maker(previous)
        try:
            await transaction.rollback()
        except Exception as e:
            logger.error(
                "CRITICAL: Transaction rollback failed - test isolation compromised",
                test_name=test_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            await connection.close()


@pytest_asyncio.fixture(scope="function")
async def client(db):
    """Async test client; request sessions share the test transaction."""
    from bankrec.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client_instance:
        yield client_instance
