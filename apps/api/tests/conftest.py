from contextlib import ExitStack, contextmanager
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import models  # noqa: F401
from database import Base, get_db
from main import app
from routers import rate_limit

SESSION_MAKER_TARGETS = (
    "services.ingestion_runner.async_session_maker",
    "services.categorization.async_session_maker",
    "services.alerting.async_session_maker",
    "services.scheduler.async_session_maker",
)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def no_pipeline_delays():
    """Rate-limit pauses between external calls are irrelevant under test."""
    with (
        patch("services.source_fetcher.settings.CHANNEL_FETCH_DELAY_SECONDS", 0),
        patch("services.ingestion_runner.settings.REPLY_TREE_DELAY_SECONDS", 0),
        patch("services.categorization.settings.CLASSIFIER_BATCH_DELAY_SECONDS", 0),
    ):
        yield


@contextmanager
def _always_acquired(job_class, tenant, ttl_seconds=None):
    yield True


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Per-test SQLite database wired into every service that opens its own sessions."""
    db_path = tmp_path / "pipeline.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    with ExitStack() as stack:
        for target in SESSION_MAKER_TARGETS:
            stack.enter_context(patch(target, maker))
        stack.enter_context(patch("services.categorization.tenant_lease", _always_acquired))
        yield maker

    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker):
    async def _override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.pop(get_db, None)
