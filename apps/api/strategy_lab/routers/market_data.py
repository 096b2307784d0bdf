from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import func, or_
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
import structlog

from strategy_lab.config import get_settings
from strategy_lab.database import get_db, AsyncSessionLocal
from strategy_lab.exceptions import UpstreamError
from strategy_lab.models import Asset, DataSyncLog, PriceDaily
from strategy_lab.schemas.common import Message, ResponseBase
from strategy_lab.schemas.market_data import (
    AssetIn, BatchFetchRequest, BatchFetchResult, CacheCoverage, CorrelationOut,
    PriceBar, SyncRequest, SyncResponse,
)
from strategy_lab.services.correlations import get_correlations, refresh_correlations
from strategy_lab.services.data_provider import (
    PriceSeriesProvider, RequestPacer, get_market_data_source,
)
from strategy_lab.services.market_data_cache import MarketDataCache

router = APIRouter()
logger = structlog.get_logger()

settings = get_settings()

# One pacer per process so concurrent requests share the upstream rate limit
_pacer = RequestPacer(settings.FETCH_DELAY_SECONDS)


def get_price_provider() -> PriceSeriesProvider:
    try:
        source = get_market_data_source()
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return PriceSeriesProvider(source, AsyncSessionLocal, pacer=_pacer)


@router.post("/fetch-batch", response_model=BatchFetchResult)
async def fetch_batch(
    req: BatchFetchRequest,
    provider: PriceSeriesProvider = Depends(get_price_provider),
):
    """
    Make the cache cover [start_date, end_date] for every ticker: reuse cached
    bars when coverage is high enough, otherwise re-fetch the full range.
    """
    return await provider.fetch_batch(req.tickers, req.start_date, req.end_date)


@router.get("/coverage/{ticker}", response_model=CacheCoverage)
async def get_coverage(
    ticker: str,
    start_date: date,
    end_date: date,
    db: AsyncSession = Depends(get_db)
):
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    return await MarketDataCache(db).get_coverage(ticker, start_date, end_date)


@router.get("/bars/{ticker}", response_model=ResponseBase[PriceBar])
async def get_bars(
    ticker: str,
    start_date: date,
    end_date: date,
    db: AsyncSession = Depends(get_db)
):
    """
    Raw cached bars for the range, as stored. No coverage check and no
    upstream fetch; use /fetch-batch to fill the cache first.
    """
    bars = await MarketDataCache(db).get_bars(ticker, start_date, end_date)
    return ResponseBase[PriceBar](count=len(bars), items=bars)


@router.get("/correlations", response_model=List[CorrelationOut])
async def list_correlations(
    tickers: Optional[List[str]] = Query(None, description="Pairs involving any of these tickers"),
    period_days: Optional[int] = Query(None, gt=0),
    db: AsyncSession = Depends(get_db)
):
    return await get_correlations(db, tickers, period_days)


@router.delete("/cache", response_model=Message)
async def reset_cache(
    ticker: Optional[str] = Query(None, description="Only reset this ticker"),
    db: AsyncSession = Depends(get_db)
):
    deleted = await MarketDataCache(db).reset(ticker)
    return {"message": f"Deleted {deleted} cached bars."}


@router.post("/assets", response_model=Message)
async def upsert_assets(assets: List[AssetIn], db: AsyncSession = Depends(get_db)):
    """Register tickers in the universe, updating name/category when present."""
    for a in assets:
        ticker = a.ticker.upper().strip()
        existing = await db.get(Asset, ticker)
        if existing:
            existing.name = a.name or existing.name
            existing.category = a.category or existing.category
            existing.is_active = a.is_active
        else:
            db.add(Asset(ticker=ticker, name=a.name, category=a.category, is_active=a.is_active))

    await db.commit()
    return {"message": f"Upserted {len(assets)} assets."}


async def _validate_existing_data(db: AsyncSession) -> dict:
    stats = {}
    issues = []

    res = await db.execute(select(
        func.count(),
        func.count(func.distinct(PriceDaily.ticker)),
        func.min(PriceDaily.bar_date),
        func.max(PriceDaily.bar_date),
    ).select_from(PriceDaily))
    total, tickers, earliest, latest = res.one()
    stats.update({
        "total_bars": total,
        "tickers": tickers,
        "earliest_date": str(earliest) if earliest else None,
        "latest_date": str(latest) if latest else None,
    })

    # Every ticker's first bar has no return; anything beyond that is a gap
    res = await db.execute(
        select(func.count()).select_from(PriceDaily).where(PriceDaily.daily_return.is_(None))
    )
    missing = res.scalar_one() - tickers
    if missing > 0:
        issues.append(f"{missing} bars have missing returns")

    stats["issues"] = issues
    return stats


@router.post("/sync", response_model=SyncResponse)
async def sync_market_data(
    req: SyncRequest,
    db: AsyncSession = Depends(get_db),
    provider: PriceSeriesProvider = Depends(get_price_provider),
):
    """
    Refresh cached bars for the asset universe.
    full: every active asset. incremental: assets whose data ends before
    yesterday. single_ticker: the given tickers. validate: report cache stats.
    """
    log = DataSyncLog(
        sync_type=req.mode,
        status="running",
        metadata_json=req.model_dump(mode='json'),
    )
    db.add(log)
    await db.commit()
    await db.refresh(log)

    if req.mode == "validate":
        stats = await _validate_existing_data(db)
        log.status = "completed"
        log.completed_at = datetime.now(timezone.utc)
        log.metadata_json = {**(log.metadata_json or {}), "stats": stats}
        await db.commit()
        return SyncResponse(sync_id=log.id, status=log.status, stats=stats)

    # Determine tickers to sync
    if req.mode == "single_ticker":
        if not req.tickers:
            log.status = "failed"
            log.completed_at = datetime.now(timezone.utc)
            await db.commit()
            raise HTTPException(status_code=400, detail="tickers is required for single_ticker mode")
        tickers = list(dict.fromkeys(t.upper().strip() for t in req.tickers))
    elif req.mode == "incremental":
        yesterday = date.today() - timedelta(days=1)
        stmt = select(Asset.ticker).where(
            Asset.is_active == True,
            or_(Asset.data_end_date.is_(None), Asset.data_end_date < yesterday),
        )
        tickers = list((await db.execute(stmt)).scalars().all())
    else:
        stmt = select(Asset.ticker).where(Asset.is_active == True)
        tickers = list((await db.execute(stmt)).scalars().all())

    end = req.end_date or date.today()
    start = req.start_date or end - timedelta(days=365 * settings.SYNC_LOOKBACK_YEARS)

    logger.info("Sync started", sync_id=log.id, mode=req.mode, tickers=len(tickers),
                start=str(start), end=str(end))

    log.tickers_total = len(tickers)
    await db.commit()

    batch = await provider.fetch_batch(tickers, start, end)

    errors = []
    succeeded = 0
    bars_written = 0
    for ticker, result in batch.results.items():
        if result.row_count == 0:
            errors.append({"ticker": ticker, "error": result.error or "no data"})
            continue

        succeeded += 1
        if not result.from_cache:
            bars_written += result.row_count

        total = (await db.execute(
            select(func.count()).select_from(PriceDaily).where(PriceDaily.ticker == ticker)
        )).scalar_one()

        asset = await db.get(Asset, ticker)
        if asset is None:
            asset = Asset(ticker=ticker, is_active=True)
            db.add(asset)
        asset.data_start_date = start
        asset.data_end_date = result.date_range.last if result.date_range else end
        asset.total_bars = total

    warnings = []
    correlation_pairs = 0
    if len(tickers) > 1 and req.mode != "single_ticker":
        await db.commit()
        # Own session: a failed correlation pass must not roll back the sync bookkeeping
        async with provider.session_factory() as corr_db:
            try:
                correlation_pairs = await refresh_correlations(corr_db, tickers, end)
            except Exception as e:
                await corr_db.rollback()
                logger.error("Correlation calculation failed", sync_id=log.id, error=str(e))
                warnings.append({"warning": "Correlation calculation failed", "error": str(e)})

    failed = len(errors)
    if failed:
        status = "partial" if succeeded else "failed"
    else:
        status = "completed"

    log.status = status
    log.completed_at = datetime.now(timezone.utc)
    log.tickers_succeeded = succeeded
    log.tickers_failed = failed
    log.bars_written = bars_written
    log.errors = errors or None
    log.warnings = warnings or None
    await db.commit()

    logger.info("Sync complete", sync_id=log.id, status=status, succeeded=succeeded,
                failed=failed, bars_written=bars_written, correlation_pairs=correlation_pairs)

    return SyncResponse(
        sync_id=log.id,
        status=status,
        tickers_total=len(tickers),
        tickers_succeeded=succeeded,
        tickers_failed=failed,
        bars_written=bars_written,
        errors=errors,
        warnings=warnings,
        correlation_pairs=correlation_pairs,
    )
