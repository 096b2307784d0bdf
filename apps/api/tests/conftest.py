import os

# Settings are cached on first use; pin test values before the app is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_strategy_lab.db")
os.environ.setdefault("POLYGON_API_KEY", "test-key")
os.environ.setdefault("FETCH_DELAY_SECONDS", "0")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from strategy_lab.database import Base, async_database_url, engine_options
from strategy_lab import models  # noqa: F401  registers tables
from strategy_lab.services.data_provider import PriceSeriesProvider, RequestPacer

from factories import FakeSource


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    url = async_database_url(f"sqlite:///{tmp_path / 'test.db'}")
    engine = create_async_engine(url, **engine_options(url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def provider(fake_source, session_factory):
    return PriceSeriesProvider(
        fake_source,
        session_factory,
        pacer=RequestPacer(0),
        timeout=5,
        concurrency=2,
    )
