"""
Pairwise return correlations between cached tickers.

Correlations use daily_return over the trailing window, aligned on common
dates. Pairs with fewer than MIN_OVERLAP common days are skipped.
"""
from datetime import date, timedelta
from typing import Dict, List, Mapping, Optional, Sequence

import pandas as pd
import structlog
from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from strategy_lab.config import get_settings
from strategy_lab.models import PriceDaily, TickerCorrelation
from strategy_lab.services.market_data_cache import dialect_insert

logger = structlog.get_logger()

MIN_OVERLAP = 20
UPSERT_CHUNK_SIZE = 100


def pairwise_correlations(returns: Mapping[str, pd.Series], period_days: int,
                          min_overlap: int = MIN_OVERLAP) -> List[Dict]:
    """
    Pearson correlation for every unordered pair, ticker_a < ticker_b.
    A flat series correlates 0 with anything.
    """
    tickers = sorted(returns)
    rows = []
    for i, a in enumerate(tickers):
        for b in tickers[i + 1:]:
            aligned = pd.concat([returns[a], returns[b]], axis=1, join='inner').dropna()
            if len(aligned) < min_overlap:
                continue

            x, y = aligned.iloc[:, 0], aligned.iloc[:, 1]
            if x.std() == 0 or y.std() == 0:
                corr = 0.0
            else:
                corr = float(x.corr(y))
            if pd.isnull(corr):
                continue

            rows.append({
                "ticker_a": a,
                "ticker_b": b,
                "correlation": round(corr, 4),
                "period_days": period_days,
            })
    return rows


async def load_returns(session: AsyncSession, tickers: Sequence[str],
                       start_date: date, end_date: date) -> Dict[str, pd.Series]:
    stmt = select(PriceDaily.ticker, PriceDaily.bar_date, PriceDaily.daily_return).where(
        PriceDaily.ticker.in_(list(tickers)),
        PriceDaily.bar_date >= start_date,
        PriceDaily.bar_date <= end_date,
        PriceDaily.daily_return.is_not(None),
    ).order_by(PriceDaily.ticker, PriceDaily.bar_date)
    res = await session.execute(stmt)

    df = pd.DataFrame(res.all(), columns=['ticker', 'bar_date', 'daily_return'])
    if df.empty:
        return {}
    return {
        ticker: group.set_index('bar_date')['daily_return']
        for ticker, group in df.groupby('ticker')
    }


async def refresh_correlations(session: AsyncSession, tickers: Sequence[str], end_date: date,
                               period_days: Optional[int] = None) -> int:
    """Recompute and upsert correlations for `tickers`. Returns the number of pairs stored."""
    settings = get_settings()
    period_days = period_days or settings.CORRELATION_PERIOD_DAYS
    limited = list(dict.fromkeys(t.upper().strip() for t in tickers))[:settings.CORRELATION_MAX_TICKERS]
    start_date = end_date - timedelta(days=period_days)

    returns = await load_returns(session, limited, start_date, end_date)
    rows = pairwise_correlations(returns, period_days)
    logger.info("Correlations calculated", tickers=len(returns), pairs=len(rows), period_days=period_days)
    if not rows:
        return 0

    insert = dialect_insert(session)
    for i in range(0, len(rows), UPSERT_CHUNK_SIZE):
        stmt = insert(TickerCorrelation).values(rows[i:i + UPSERT_CHUNK_SIZE])
        stmt = stmt.on_conflict_do_update(
            index_elements=["ticker_a", "ticker_b", "period_days"],
            set_={"correlation": stmt.excluded.correlation, "calculated_at": func.now()},
        )
        await session.execute(stmt)
    await session.commit()
    return len(rows)


async def get_correlations(session: AsyncSession, tickers: Optional[Sequence[str]] = None,
                           period_days: Optional[int] = None) -> List[TickerCorrelation]:
    period_days = period_days or get_settings().CORRELATION_PERIOD_DAYS
    stmt = select(TickerCorrelation).where(TickerCorrelation.period_days == period_days)
    if tickers:
        wanted = [t.upper().strip() for t in tickers]
        stmt = stmt.where(or_(TickerCorrelation.ticker_a.in_(wanted), TickerCorrelation.ticker_b.in_(wanted)))
    stmt = stmt.order_by(TickerCorrelation.ticker_a, TickerCorrelation.ticker_b)
    res = await session.execute(stmt)
    return list(res.scalars().all())
