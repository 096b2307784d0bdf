from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from strategy_lab.config import get_settings

settings = get_settings()

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite:///": "sqlite+aiosqlite:///",
}


def async_database_url(url: str) -> str:
    """Map a plain DATABASE_URL onto its async driver (asyncpg / aiosqlite)."""
    for plain, driver in _ASYNC_DRIVERS.items():
        if url.startswith(plain):
            return url.replace(plain, driver, 1)
    return url


def engine_options(url: str) -> dict:
    options = {"echo": False, "future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # batch fetches write from several sessions at once
        options["connect_args"] = {"timeout": 30}
    return options


db_url = async_database_url(settings.DATABASE_URL)
engine = create_async_engine(db_url, **engine_options(db_url))

AsyncSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

Base = declarative_base()

async def get_db():
    """One session per request; the provider opens its own per ticker."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
