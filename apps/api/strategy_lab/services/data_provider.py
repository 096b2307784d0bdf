import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import requests
import structlog
from pydantic import ValidationError

from strategy_lab.config import get_settings
from strategy_lab.exceptions import DataUnavailableError, UpstreamError
from strategy_lab.schemas.market_data import (
    BatchFetchResult,
    BatchFetchSummary,
    DateRange,
    PolygonAggsResponse,
    PriceBar,
    TickerFetchResult,
)
from strategy_lab.services.market_data_cache import (
    CoverageFreshnessPolicy,
    FreshnessPolicy,
    MarketDataCache,
    expected_trading_days,
)

logger = structlog.get_logger()

STATUS_OK = "OK"
STATUS_DELAYED = "DELAYED" # free tier, data is valid
STATUS_NO_DATA = "NO_DATA"


@dataclass
class SourceResult:
    status: str
    bars: List[PriceBar] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.status in (STATUS_OK, STATUS_DELAYED) and bool(self.bars)


class MarketDataSource(ABC):
    name = "source"

    @abstractmethod
    def get_daily_bars(self, ticker: str, start_date: date, end_date: date) -> SourceResult:
        """
        Return daily bars for [start_date, end_date].
        Raise UpstreamError on transport or API errors; return NO_DATA when the
        source answered but has nothing for the range.
        """
        pass


class PolygonSource(MarketDataSource):
    name = "polygon"

    def __init__(self, api_key: str, base_url: str = "https://api.polygon.io",
                 timeout: float = 30.0, http: Optional[requests.Session] = None):
        if not api_key:
            raise UpstreamError(self.name, "POLYGON_API_KEY not configured")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = http or requests.Session()

    def get_daily_bars(self, ticker: str, start_date: date, end_date: date) -> SourceResult:
        url = f"{self.base_url}/v2/aggs/ticker/{ticker}/range/1/day/{start_date.isoformat()}/{end_date.isoformat()}"
        params = {
            "adjusted": "true",
            "sort": "asc",
            "limit": 50000,
            "apiKey": self.api_key,
        }

        try:
            resp = self.http.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise UpstreamError(self.name, f"request failed for {ticker}: {e}") from e

        if not resp.ok:
            raise UpstreamError(self.name, f"{ticker}: {resp.status_code} - {resp.text[:200]}", resp.status_code)

        try:
            payload = PolygonAggsResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise UpstreamError(self.name, f"malformed payload for {ticker}: {e}") from e

        if payload.status == "ERROR":
            raise UpstreamError(self.name, payload.error or payload.message or "Unknown error")

        if payload.status not in (STATUS_OK, STATUS_DELAYED) or not payload.results:
            logger.warning("No data from Polygon", ticker=ticker, status=payload.status, results_count=payload.resultsCount)
            return SourceResult(status=STATUS_NO_DATA)

        bars = [
            PriceBar(
                ticker=ticker,
                date=agg.bar_date,
                open=agg.o,
                high=agg.h,
                low=agg.l,
                close=agg.c,
                volume=agg.v,
                vwap=agg.vw,
                transactions=agg.n,
            )
            for agg in payload.results
        ]
        return SourceResult(status=payload.status, bars=bars)


class YahooFinanceSource(MarketDataSource):
    name = "yahoo"

    def __init__(self):
        import yfinance as yf
        self.yf = yf

    def get_daily_bars(self, ticker: str, start_date: date, end_date: date) -> SourceResult:
        # yfinance treats `end` as exclusive
        try:
            df = self.yf.download(ticker, start=start_date, end=end_date + timedelta(days=1),
                                  progress=False, auto_adjust=True)
        except Exception as e:
            raise UpstreamError(self.name, f"download failed for {ticker}: {e}") from e

        if df is None or df.empty:
            return SourceResult(status=STATUS_NO_DATA)

        # Recent yfinance versions return (field, ticker) column pairs
        if isinstance(df.columns, pd.MultiIndex):
            df.columns = df.columns.get_level_values(0)

        df = df.reset_index()
        df.rename(columns={
            'Date': 'date',
            'Open': 'open',
            'High': 'high',
            'Low': 'low',
            'Close': 'close',
            'Volume': 'volume'
        }, inplace=True)

        mask = (df['date'].dt.date >= start_date) & (df['date'].dt.date <= end_date)
        df = df.loc[mask].dropna(subset=['open', 'high', 'low', 'close'])
        df = df.assign(volume=df['volume'].fillna(0))
        if df.empty:
            return SourceResult(status=STATUS_NO_DATA)

        bars = [
            PriceBar(
                ticker=ticker,
                date=row['date'].date(),
                open=float(row['open']),
                high=float(row['high']),
                low=float(row['low']),
                close=float(row['close']),
                volume=float(row['volume']),
            )
            for _, row in df.iterrows()
        ]
        return SourceResult(status=STATUS_OK, bars=bars)


def get_market_data_source() -> MarketDataSource:
    settings = get_settings()
    if settings.MARKET_DATA_SOURCE == "yahoo":
        return YahooFinanceSource()
    return PolygonSource(
        api_key=settings.POLYGON_API_KEY,
        base_url=settings.POLYGON_BASE_URL,
        timeout=settings.FETCH_TIMEOUT_SECONDS,
    )


def normalize_bars(ticker: str, bars: Sequence[PriceBar], start_date: date, end_date: date) -> List[PriceBar]:
    """Sort, de-duplicate by date (last wins), clip to range and derive daily/log returns."""
    if not bars:
        return []

    df = pd.DataFrame([b.model_dump() for b in bars])
    df = df[(df['date'] >= start_date) & (df['date'] <= end_date)]
    if df.empty:
        return []

    df = df.drop_duplicates(subset='date', keep='last').sort_values('date')
    # Vendors occasionally leave holes in a bar; a missing price drops that bar only
    df = df.dropna(subset=['open', 'high', 'low', 'close'])
    if df.empty:
        return []
    df = df.assign(volume=df['volume'].fillna(0))
    prev_close = df['close'].shift(1)
    df['daily_return'] = (df['close'] - prev_close) / prev_close
    df['log_return'] = np.log(df['close'] / prev_close)
    df['ticker'] = ticker
    df = df.replace([np.inf, -np.inf], np.nan)
    df = df.astype(object).where(pd.notnull(df), None)

    return [PriceBar(**rec) for rec in df.to_dict(orient='records')]


class RequestPacer:
    """
    Enforces a minimum spacing between dispatched upstream requests, across
    every task sharing this pacer.
    """

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._lock = asyncio.Lock()
        self._last = None

    async def wait(self):
        async with self._lock:
            now = time.monotonic()
            if self._last is not None:
                delay = self._last + self.min_interval - now
                if delay > 0:
                    await asyncio.sleep(delay)
            self._last = time.monotonic()


class PriceSeriesProvider:
    """
    Serves bars for ticker ranges through the cache.

    session_factory: callable returning an AsyncSession context manager; every
    ticker gets its own session so batch fan-out never shares one.
    """

    def __init__(self, source: MarketDataSource, session_factory: Callable,
                 policy: Optional[FreshnessPolicy] = None,
                 pacer: Optional[RequestPacer] = None,
                 timeout: Optional[float] = None,
                 concurrency: Optional[int] = None):
        settings = get_settings()
        self.source = source
        self.session_factory = session_factory
        self.policy = policy or CoverageFreshnessPolicy()
        self.pacer = pacer or RequestPacer(settings.FETCH_DELAY_SECONDS)
        self.timeout = timeout if timeout is not None else settings.FETCH_TIMEOUT_SECONDS
        self.concurrency = concurrency or settings.FETCH_CONCURRENCY

    async def fetch_range(self, ticker: str, start_date: date, end_date: date) -> List[PriceBar]:
        """Fetch bars straight from the source. Raises UpstreamError / asyncio.TimeoutError."""
        ticker = ticker.upper().strip()
        await self.pacer.wait()

        result = await asyncio.wait_for(
            asyncio.to_thread(self.source.get_daily_bars, ticker, start_date, end_date),
            timeout=self.timeout,
        )
        if not result.has_data:
            return []

        if result.status == STATUS_DELAYED:
            logger.info("Using delayed data", ticker=ticker, source=self.source.name)
        return normalize_bars(ticker, result.bars, start_date, end_date)

    async def ensure_range(self, ticker: str, start_date: date, end_date: date) -> TickerFetchResult:
        """
        Make sure the cache can serve [start_date, end_date] for ticker.
        Fresh cache is used as-is; otherwise the full range is re-fetched and
        upserted. Failures degrade to row_count 0.
        """
        ticker = ticker.upper().strip()

        async with self.session_factory() as session:
            cache = MarketDataCache(session)
            coverage = await cache.get_coverage(ticker, start_date, end_date)

            logger.info("Cache coverage", ticker=ticker, count=coverage.count,
                        expected=coverage.expected, ratio=round(coverage.ratio, 3))

            if self.policy.is_fresh(coverage):
                bars = await cache.get_bars(ticker, start_date, end_date)
                return TickerFetchResult(
                    from_cache=True,
                    row_count=len(bars),
                    date_range=DateRange(first=bars[0].date, last=bars[-1].date) if bars else None,
                )

            try:
                bars = await self.fetch_range(ticker, start_date, end_date)
                if not bars:
                    raise DataUnavailableError(ticker)
            except DataUnavailableError as e:
                logger.warning("No bars for ticker", ticker=ticker, error=str(e))
                return TickerFetchResult(from_cache=False, row_count=0, error=str(e))
            except asyncio.TimeoutError:
                logger.error("Ticker fetch timed out", ticker=ticker, timeout=self.timeout)
                return TickerFetchResult(from_cache=False, row_count=0, error="timeout")
            except ValidationError as e:
                logger.error("Malformed bars from source", ticker=ticker, errors=e.error_count())
                return TickerFetchResult(from_cache=False, row_count=0,
                                         error=f"{self.source.name}: malformed bars for {ticker}")
            except UpstreamError as e:
                logger.error("Ticker fetch failed", ticker=ticker, error=str(e))
                return TickerFetchResult(from_cache=False, row_count=0, error=str(e))

            written = await cache.upsert_bars(ticker, bars)
            return TickerFetchResult(
                from_cache=False,
                row_count=written,
                date_range=DateRange(first=bars[0].date, last=bars[-1].date),
            )

    async def fetch_batch(self, tickers: Sequence[str], start_date: date, end_date: date,
                          abort: Optional[asyncio.Event] = None) -> BatchFetchResult:
        """
        ensure_range for every ticker with bounded concurrency. One ticker's
        failure never fails the batch. Once `abort` is set no further ticker is
        started.
        """
        normalized = list(dict.fromkeys(t.upper().strip() for t in tickers if t and t.strip()))
        expected = expected_trading_days(start_date, end_date)

        logger.info("Batch fetch started", tickers=len(normalized), start_date=str(start_date),
                    end_date=str(end_date), expected_trading_days=expected)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(ticker: str) -> TickerFetchResult:
            async with semaphore:
                if abort is not None and abort.is_set():
                    return TickerFetchResult(from_cache=False, row_count=0, error="aborted")
                try:
                    return await self.ensure_range(ticker, start_date, end_date)
                except Exception as e:
                    # Cache/database trouble for one ticker stays with that ticker
                    logger.error("Ticker processing failed", ticker=ticker, error=str(e))
                    return TickerFetchResult(from_cache=False, row_count=0, error=str(e))

        outcomes = await asyncio.gather(*(run_one(t) for t in normalized))
        results: Dict[str, TickerFetchResult] = dict(zip(normalized, outcomes))

        summary = BatchFetchSummary(
            total=len(normalized),
            from_cache=sum(1 for r in outcomes if r.from_cache),
            from_api=sum(1 for r in outcomes if not r.from_cache and r.row_count > 0),
            expected_trading_days=expected,
        )
        logger.info("Batch fetch complete", **summary.model_dump())
        return BatchFetchResult(summary=summary, results=results)
