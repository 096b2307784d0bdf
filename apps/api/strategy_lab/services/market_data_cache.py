from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from strategy_lab.config import get_settings
from strategy_lab.models import PriceDaily
from strategy_lab.schemas.market_data import CacheCoverage, PriceBar

logger = structlog.get_logger()

TRADING_DAYS_PER_YEAR = 252

# Columns overwritten when a (ticker, bar_date) row already exists
_UPSERT_COLUMNS = (
    "open", "high", "low", "close", "volume",
    "vwap", "transactions", "daily_return", "log_return",
)


def expected_trading_days(start_date: date, end_date: date) -> int:
    """Approximate trading days in a range: floor(calendar_days * 252 / 365)."""
    calendar_days = (end_date - start_date).days
    if calendar_days <= 0:
        return 0
    return (calendar_days * TRADING_DAYS_PER_YEAR) // 365


class FreshnessPolicy(ABC):
    @abstractmethod
    def is_fresh(self, coverage: CacheCoverage) -> bool:
        """True when cached bars may be used as-is for the requested range."""


class CoverageFreshnessPolicy(FreshnessPolicy):
    """
    Cache is sufficient when observed/expected >= threshold.
    Below the threshold the whole range is re-fetched; gaps are never patched.
    """

    def __init__(self, threshold: Optional[float] = None):
        self.threshold = threshold if threshold is not None else get_settings().COVERAGE_THRESHOLD

    def is_fresh(self, coverage: CacheCoverage) -> bool:
        return coverage.ratio >= self.threshold


def dialect_insert(session: AsyncSession):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")
    return insert


class MarketDataCache:
    def __init__(self, session: AsyncSession, chunk_size: Optional[int] = None):
        self.session = session
        self.chunk_size = chunk_size or get_settings().UPSERT_CHUNK_SIZE

    async def get_coverage(self, ticker: str, start_date: date, end_date: date) -> CacheCoverage:
        ticker = ticker.upper().strip()
        stmt = select(func.count()).select_from(PriceDaily).where(
            PriceDaily.ticker == ticker,
            PriceDaily.bar_date >= start_date,
            PriceDaily.bar_date <= end_date,
        )
        count = (await self.session.execute(stmt)).scalar_one()
        expected = expected_trading_days(start_date, end_date)
        ratio = count / expected if expected > 0 else 0.0

        return CacheCoverage(
            ticker=ticker,
            start_date=start_date,
            end_date=end_date,
            count=count,
            expected=expected,
            ratio=ratio,
        )

    async def get_bars(self, ticker: str, start_date: date, end_date: date) -> List[PriceBar]:
        ticker = ticker.upper().strip()
        stmt = select(PriceDaily).where(
            PriceDaily.ticker == ticker,
            PriceDaily.bar_date >= start_date,
            PriceDaily.bar_date <= end_date,
        ).order_by(PriceDaily.bar_date)
        res = await self.session.execute(stmt)

        return [
            PriceBar(
                ticker=r.ticker,
                date=r.bar_date,
                open=r.open,
                high=r.high,
                low=r.low,
                close=r.close,
                volume=r.volume,
                vwap=r.vwap,
                transactions=r.transactions,
                daily_return=r.daily_return,
                log_return=r.log_return,
            )
            for r in res.scalars().all()
        ]

    async def upsert_bars(self, ticker: str, bars: Sequence[PriceBar]) -> int:
        """
        Insert or overwrite bars keyed by (ticker, bar_date), committing in chunks.
        Returns the number of rows in chunks that committed. A failed chunk is
        rolled back and logged; chunks committed before it stay.
        """
        ticker = ticker.upper().strip()

        # Same date twice in one statement breaks ON CONFLICT; keep the last one
        rows: Dict[date, dict] = {}
        for b in bars:
            rows[b.date] = {
                "ticker": ticker,
                "bar_date": b.date,
                "open": b.open,
                "high": b.high,
                "low": b.low,
                "close": b.close,
                "volume": int(b.volume),
                "vwap": b.vwap,
                "transactions": b.transactions,
                "daily_return": b.daily_return,
                "log_return": b.log_return,
            }
        payload = [rows[d] for d in sorted(rows)]
        if not payload:
            return 0

        insert = dialect_insert(self.session)
        written = 0

        for i in range(0, len(payload), self.chunk_size):
            chunk = payload[i:i + self.chunk_size]
            stmt = insert(PriceDaily).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["ticker", "bar_date"],
                set_={col: getattr(stmt.excluded, col) for col in _UPSERT_COLUMNS},
            )
            try:
                await self.session.execute(stmt)
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error("Bar upsert chunk failed", ticker=ticker, offset=i, rows=len(chunk), error=str(e))
                continue
            written += len(chunk)

        logger.info("Bars upserted", ticker=ticker, rows=written, requested=len(payload))
        return written

    async def reset(self, ticker: Optional[str] = None) -> int:
        """Delete cached bars, for one ticker or all of them."""
        stmt = delete(PriceDaily)
        if ticker:
            stmt = stmt.where(PriceDaily.ticker == ticker.upper().strip())
        res = await self.session.execute(stmt)
        await self.session.commit()

        logger.warning("Market data cache reset", ticker=ticker or "*", rows=res.rowcount)
        return res.rowcount
