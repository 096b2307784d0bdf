from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    PROJECT_NAME: str = "Strategy Lab API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./strategy_lab.db"

    # App
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Market data
    MARKET_DATA_SOURCE: str = "polygon" # polygon | yahoo
    POLYGON_API_KEY: str = ""
    POLYGON_BASE_URL: str = "https://api.polygon.io"
    COVERAGE_THRESHOLD: float = 0.9
    UPSERT_CHUNK_SIZE: int = 500
    FETCH_DELAY_SECONDS: float = 0.25 # free tier is 5 requests/minute
    FETCH_TIMEOUT_SECONDS: float = 30.0
    FETCH_CONCURRENCY: int = 5
    SYNC_LOOKBACK_YEARS: int = 5
    CORRELATION_PERIOD_DAYS: int = 252
    CORRELATION_MAX_TICKERS: int = 50

    # Backtest defaults
    DEFAULT_INITIAL_CAPITAL: float = 10_000.0
    MAX_HOLDING_DAYS: int = 30
    DEFAULT_POSITION_FRACTION: float = 0.10

    # Portfolio backtests
    PORTFOLIO_INITIAL_CAPITAL: float = 100_000.0
    RISK_FREE_RATE: float = 0.04

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings():
    return Settings()
