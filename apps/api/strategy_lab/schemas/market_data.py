from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from datetime import date, datetime, timezone
from typing import Dict, List, Literal, Optional

class PriceBar(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticker: str
    date: date
    open: float
    high: float
    low: float
    close: float
    volume: float
    vwap: Optional[float] = None
    transactions: Optional[int] = None
    daily_return: Optional[float] = None
    log_return: Optional[float] = None

    @field_validator("ticker")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper().strip()

class CacheCoverage(BaseModel):
    ticker: str
    start_date: date
    end_date: date
    count: int
    expected: int
    ratio: float

class DateRange(BaseModel):
    first: date
    last: date

class TickerFetchResult(BaseModel):
    from_cache: bool
    row_count: int
    date_range: Optional[DateRange] = None
    error: Optional[str] = None

class BatchFetchSummary(BaseModel):
    total: int
    from_cache: int
    from_api: int
    expected_trading_days: int

class BatchFetchRequest(BaseModel):
    tickers: List[str] = Field(min_length=1)
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

class BatchFetchResult(BaseModel):
    summary: BatchFetchSummary
    results: Dict[str, TickerFetchResult]

class AssetIn(BaseModel):
    ticker: str
    name: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True

class SyncRequest(BaseModel):
    mode: Literal["full", "incremental", "single_ticker", "validate"]
    tickers: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

class SyncResponse(BaseModel):
    sync_id: int
    status: str
    tickers_total: int = 0
    tickers_succeeded: int = 0
    tickers_failed: int = 0
    bars_written: int = 0
    errors: List[Dict[str, str]] = []
    warnings: List[Dict[str, str]] = []
    correlation_pairs: int = 0
    stats: Optional[Dict] = None

class CorrelationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticker_a: str
    ticker_b: str
    correlation: float
    period_days: int
    calculated_at: Optional[datetime] = None

# Polygon aggregates payload (/v2/aggs/ticker/{t}/range/1/day/{from}/{to})

class PolygonAggregate(BaseModel):
    t: int # epoch millis
    o: float
    h: float
    l: float
    c: float
    v: float
    vw: Optional[float] = None
    n: Optional[int] = None

    @property
    def bar_date(self) -> date:
        return datetime.fromtimestamp(self.t / 1000, tz=timezone.utc).date()

class PolygonAggsResponse(BaseModel):
    status: str
    ticker: Optional[str] = None
    resultsCount: Optional[int] = None
    results: List[PolygonAggregate] = []
    error: Optional[str] = None
    message: Optional[str] = None

    @field_validator("results", mode="before")
    @classmethod
    def _null_results(cls, v):
        return v or []
