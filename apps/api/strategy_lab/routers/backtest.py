from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional
import uuid
import structlog

from strategy_lab.database import get_db
from strategy_lab.models import Asset, BacktestRun, BacktestTrade, BacktestEquity, SignalDaily
from strategy_lab.routers.market_data import get_price_provider
from strategy_lab.schemas.backtest import (
    BacktestCreate, BacktestResultResponse, BacktestResults,
    TradeResponse, EquityPointResponse, CategoryStats,
    PortfolioBacktestRequest, PortfolioBacktestResult, PortfolioDataQuality,
    PortfolioMetrics, PortfolioSnapshotResponse, PortfolioTradeResponse,
)
from strategy_lab.services.backtest_engine import BacktestEngine, BacktestOutcome, Instrument
from strategy_lab.services.data_provider import PriceSeriesProvider
from strategy_lab.services.market_data_cache import MarketDataCache
from strategy_lab.services.performance import summarize
from strategy_lab.services.portfolio import PortfolioBacktester, price_matrix

router = APIRouter()
logger = structlog.get_logger()


async def load_instruments(db: AsyncSession, provider: PriceSeriesProvider,
                           tickers: Optional[List[str]], start: date, end: date) -> List[Instrument]:
    """
    Resolve the universe, run every ticker through the cache freshness check,
    then build Instruments from cached bars and stored signals.
    Tickers that end up with no bars are left out.
    """
    if tickers:
        wanted = list(dict.fromkeys(t.upper().strip() for t in tickers if t.strip()))
        res = await db.execute(select(Asset).where(Asset.ticker.in_(wanted)))
        assets = {a.ticker: a for a in res.scalars().all()}
    else:
        res = await db.execute(select(Asset).where(Asset.is_active == True).order_by(Asset.ticker))
        assets = {a.ticker: a for a in res.scalars().all()}
        wanted = list(assets)

    if not wanted:
        return []

    batch = await provider.fetch_batch(wanted, start, end)

    # Signals for the whole universe in one query
    stmt = select(SignalDaily).where(
        SignalDaily.ticker.in_(wanted),
        SignalDaily.date >= start,
        SignalDaily.date <= end,
    )
    res = await db.execute(stmt)
    signals: Dict[str, Dict[date, Dict[str, float]]] = defaultdict(lambda: defaultdict(dict))
    for s in res.scalars().all():
        signals[s.ticker][s.date][s.metric] = s.value

    cache = MarketDataCache(db)
    instruments = []
    for ticker in wanted:
        if batch.results[ticker].row_count == 0:
            logger.warning("Ticker excluded from backtest, no bars", ticker=ticker)
            continue
        bars = await cache.get_bars(ticker, start, end)
        if not bars:
            continue

        asset = assets.get(ticker)
        instruments.append(Instrument.from_bars(
            ticker,
            bars,
            title=(asset.name if asset and asset.name else ticker),
            category=(asset.category if asset else None),
            signals=signals.get(ticker),
        ))

    return instruments


def build_results(outcome: BacktestOutcome) -> BacktestResults:
    metrics = summarize(
        outcome.trades,
        outcome.equity_curve,
        outcome.initial_capital,
        category_breakdown=outcome.category_breakdown,
        final_capital=outcome.final_capital,
    )
    return BacktestResults(
        total_return=metrics['total_return'],
        win_rate=metrics['win_rate'],
        sharpe_ratio=metrics['sharpe_ratio'],
        max_drawdown=metrics['max_drawdown'],
        total_trades=metrics['total_trades'],
        avg_holding_period=metrics['avg_holding_period'],
        trades=[TradeResponse(**{k: v for k, v in t.to_dict().items() if k in TradeResponse.model_fields})
                for t in outcome.trades],
        equity_curve=[EquityPointResponse(date=p.date, capital=p.capital) for p in outcome.equity_curve],
        category_breakdown={k: CategoryStats(**v) for k, v in metrics['category_breakdown'].items()},
    )


async def execute_backtest(db: AsyncSession, provider: PriceSeriesProvider, params: BacktestCreate):
    engine = BacktestEngine()
    # Fail fast before touching market data
    engine.validate(params.strategy, params.start_date, params.end_date, params.initial_capital)

    instruments = await load_instruments(db, provider, params.tickers, params.start_date, params.end_date)
    outcome = engine.run(params.strategy, params.start_date, params.end_date,
                         params.initial_capital, instruments)
    return outcome, build_results(outcome)


async def run_backtest_task(run_id: str, params: dict, provider: PriceSeriesProvider):
    # Create new session
    async with provider.session_factory() as db:
        try:
            # Update status to RUNNING
            run = await db.get(BacktestRun, run_id)
            if run:
                run.status = "RUNNING"
                await db.commit()

            request = BacktestCreate.model_validate(params)
            outcome, results = await execute_backtest(db, provider, request)

            # Save Results
            for t in outcome.trades:
                db.add(BacktestTrade(run_id=run_id, **t.to_dict()))

            for p in outcome.equity_curve:
                db.add(BacktestEquity(run_id=run_id, date=p.date, capital=p.capital))

            run = await db.get(BacktestRun, run_id)
            if run:
                run.status = "COMPLETED"
                run.results_json = results.model_dump(mode='json', exclude={'trades', 'equity_curve'})

            await db.commit()
            logger.info("Backtest run completed", run_id=run_id, trades=len(outcome.trades))

        except Exception as e:
            # Nothing from the failed run is kept, only the status
            await db.rollback()
            logger.error("Backtest run failed", run_id=run_id, error=str(e))
            run = await db.get(BacktestRun, run_id)
            if run:
                run.status = "FAILED"
                run.error = str(e)
                await db.commit()


@router.post("/run", response_model=BacktestResultResponse)
async def create_backtest(
    params: BacktestCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    provider: PriceSeriesProvider = Depends(get_price_provider),
):
    # InputError is turned into a 400 by the app handler
    BacktestEngine().validate(params.strategy, params.start_date, params.end_date, params.initial_capital)

    run_id = str(uuid.uuid4())

    # Create Record
    run_rec = BacktestRun(
        run_id=run_id,
        params_json=params.model_dump(mode='json'),
        status="PENDING"
    )
    db.add(run_rec)
    await db.commit()

    # Trigger Task
    background_tasks.add_task(run_backtest_task, run_id, params.model_dump(mode='json'), provider)

    return BacktestResultResponse(
        run_id=run_id,
        status="PENDING"
    )


@router.post("/run/sync", response_model=BacktestResults)
async def run_backtest_inline(
    params: BacktestCreate,
    db: AsyncSession = Depends(get_db),
    provider: PriceSeriesProvider = Depends(get_price_provider),
):
    """Run a backtest in the request and return the full results object."""
    _, results = await execute_backtest(db, provider, params)
    return results


@router.post("/portfolio", response_model=PortfolioBacktestResult)
async def run_portfolio_backtest(
    params: PortfolioBacktestRequest,
    db: AsyncSession = Depends(get_db),
    provider: PriceSeriesProvider = Depends(get_price_provider),
):
    """
    Buy-and-hold or equal-weight (rebalanced monthly/quarterly) portfolio over
    cached closes. Every ticker goes through the cache freshness check first.
    """
    tickers = list(dict.fromkeys(t.upper().strip() for t in params.tickers if t.strip()))
    await provider.fetch_batch(tickers, params.start_date, params.end_date)

    cache = MarketDataCache(db)
    bars = {}
    for ticker in tickers:
        bars[ticker] = await cache.get_bars(ticker, params.start_date, params.end_date)

    outcome = PortfolioBacktester().run(
        price_matrix(bars), tickers, params.start_date, params.end_date,
        params.initial_capital, params.strategy, params.rebalance_frequency,
    )
    return PortfolioBacktestResult(
        metrics=PortfolioMetrics(**outcome.metrics),
        data_quality=PortfolioDataQuality(**outcome.data_quality),
        warnings=outcome.warnings,
        portfolio_history=[PortfolioSnapshotResponse.model_validate(p) for p in outcome.history],
        final_holdings=outcome.holdings,
        trades=[PortfolioTradeResponse.model_validate(t) for t in outcome.trades],
        cash_remaining=outcome.cash,
    )


@router.get("/{run_id}", response_model=BacktestResultResponse)
async def get_backtest_result(run_id: str, db: AsyncSession = Depends(get_db)):
    run = await db.get(BacktestRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    # Get Trades
    stmt = select(BacktestTrade).where(BacktestTrade.run_id == run_id).order_by(BacktestTrade.exit_date, BacktestTrade.id)
    res = await db.execute(stmt)
    trades = res.scalars().all()

    # Get Equity
    stmt = select(BacktestEquity).where(BacktestEquity.run_id == run_id).order_by(BacktestEquity.date)
    res = await db.execute(stmt)
    equity = res.scalars().all()

    results = dict(run.results_json or {})
    breakdown = results.pop('category_breakdown', {}) or {}

    return BacktestResultResponse(
        run_id=run.run_id,
        status=run.status,
        error=run.error,
        metrics=results or None,
        trades=[TradeResponse(
            instrument_id=t.instrument_id,
            title=t.title or t.instrument_id,
            entry_date=t.entry_date,
            entry_price=t.entry_price,
            exit_date=t.exit_date,
            exit_price=t.exit_price,
            pnl=t.pnl,
            pnl_percent=t.pnl_percent,
            holding_days=t.holding_days,
            exit_reason=t.exit_reason
        ) for t in trades],
        equity_curve=[EquityPointResponse(
            date=e.date,
            capital=e.capital
        ) for e in equity],
        category_breakdown={k: CategoryStats(**v) for k, v in breakdown.items()},
    )
