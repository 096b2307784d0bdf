"""
Portfolio backtests over cached closes: buy-and-hold, or equal weight with
calendar rebalancing. Whole shares only; leftover cash is carried.
"""
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from strategy_lab.config import get_settings
from strategy_lab.exceptions import InputError
from strategy_lab.schemas.market_data import PriceBar
from strategy_lab.services.market_data_cache import expected_trading_days
from strategy_lab.services.performance import TRADING_DAYS_PER_YEAR

logger = structlog.get_logger()

STRATEGIES = ("buy_hold", "equal_weight")
REBALANCE_FREQUENCIES = ("monthly", "quarterly")

# Below this share of expected trading days the run carries a warning
COMPLETENESS_WARNING = 0.8


@dataclass(frozen=True)
class PortfolioTrade:
    date: date
    ticker: str
    action: str # BUY, SELL
    shares: int
    price: float


@dataclass(frozen=True)
class PortfolioSnapshot:
    date: date
    value: float


@dataclass
class PortfolioOutcome:
    initial_capital: float
    history: List[PortfolioSnapshot]
    trades: List[PortfolioTrade]
    holdings: Dict[str, int]
    cash: float
    metrics: Dict[str, float] = field(default_factory=dict)
    data_quality: Dict = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def price_matrix(bars_by_ticker: Mapping[str, Sequence[PriceBar]]) -> pd.DataFrame:
    """Closes as a date x ticker frame. Non-positive closes are treated as missing."""
    frames = {
        ticker: pd.Series({b.date: b.close for b in bars}, dtype=float)
        for ticker, bars in bars_by_ticker.items() if bars
    }
    if not frames:
        return pd.DataFrame()
    prices = pd.DataFrame(frames).sort_index()
    return prices.where(prices > 0)


def _period(d: date, frequency: str):
    if frequency == "quarterly":
        return d.year, (d.month - 1) // 3
    return d.year, d.month


def portfolio_metrics(history: Sequence[PortfolioSnapshot], initial_capital: float,
                      risk_free_rate: float) -> Dict[str, float]:
    """
    Annualization uses observed trading days / 252. Sharpe is
    (annualized return - risk free) / annualized volatility of daily returns.
    """
    values = pd.Series([p.value for p in history], dtype=float)
    final_value = float(values.iloc[-1]) if len(values) else initial_capital
    total_return = (final_value - initial_capital) / initial_capital

    years = len(values) / TRADING_DAYS_PER_YEAR
    annualized = (1 + total_return) ** (1 / years) - 1 if years > 0 and total_return > -1 else 0.0

    daily = values.pct_change().dropna()
    volatility = 0.0
    sharpe = 0.0
    if len(daily) > 1:
        volatility = float(daily.std(ddof=1) * np.sqrt(TRADING_DAYS_PER_YEAR))
        if volatility > 0:
            sharpe = (annualized - risk_free_rate) / volatility

    peak = values.cummax().clip(lower=initial_capital)
    max_drawdown = float(((peak - values) / peak).max()) if len(values) else 0.0

    return {
        "total_return": total_return,
        "annualized_return": float(annualized),
        "volatility": volatility,
        "sharpe_ratio": float(sharpe),
        "max_drawdown": max(max_drawdown, 0.0),
        "initial_capital": initial_capital,
        "final_value": final_value,
        "trading_days": len(values),
        "years": years,
    }


class PortfolioBacktester:
    def __init__(self, risk_free_rate: Optional[float] = None):
        self.risk_free_rate = risk_free_rate if risk_free_rate is not None else get_settings().RISK_FREE_RATE

    def run(self, prices: pd.DataFrame, tickers: Sequence[str], start_date: date, end_date: date,
            initial_capital: float, strategy: str = "buy_hold",
            rebalance_frequency: str = "monthly") -> PortfolioOutcome:
        if strategy not in STRATEGIES:
            raise InputError(f"Unknown portfolio strategy: {strategy}")
        if rebalance_frequency not in REBALANCE_FREQUENCIES:
            raise InputError(f"Unknown rebalance frequency: {rebalance_frequency}")
        if not initial_capital > 0:
            raise InputError("initial_capital must be positive")

        tickers = list(dict.fromkeys(t.upper().strip() for t in tickers))
        prices = prices.reindex(columns=tickers).dropna(how='all')
        if prices.empty:
            raise InputError("No price data found for the requested tickers and range")

        data_quality, warnings = self._data_quality(prices, tickers, start_date, end_date)

        first_date = prices.index[0]
        first = prices.loc[first_date]
        available = [t for t in tickers if pd.notnull(first[t])]
        if not available:
            raise InputError(f"No tickers have valid prices on {first_date}")

        cash = float(initial_capital)
        holdings: Dict[str, int] = {}
        trades: List[PortfolioTrade] = []
        history: List[PortfolioSnapshot] = []

        cash = self._buy_equal(first_date, first, available, cash, holdings, trades)
        last_period = _period(first_date, rebalance_frequency)

        # Valuation carries the last close over days a ticker did not trade
        marks = prices.ffill()

        for day in prices.index:
            mark = marks.loc[day]
            value = cash + sum(shares * mark[t] for t, shares in holdings.items() if pd.notnull(mark[t]))
            history.append(PortfolioSnapshot(date=day, value=round(float(value), 2)))

            if strategy != "equal_weight" or day == first_date:
                continue
            period = _period(day, rebalance_frequency)
            if period == last_period:
                continue
            last_period = period

            row = prices.loc[day]
            for ticker, shares in list(holdings.items()):
                if shares > 0 and pd.notnull(row[ticker]):
                    cash += shares * row[ticker]
                    trades.append(PortfolioTrade(day, ticker, "SELL", shares, round(float(row[ticker]), 2)))
                    holdings[ticker] = 0

            priced = [t for t in available if pd.notnull(row[t])]
            if priced:
                cash = self._buy_equal(day, row, priced, cash, holdings, trades)

        metrics = portfolio_metrics(history, initial_capital, self.risk_free_rate)
        metrics["total_trades"] = len(trades)

        logger.info("Portfolio backtest finished", strategy=strategy, tickers=len(available),
                    trading_days=len(history), total_return=round(metrics["total_return"], 4))

        return PortfolioOutcome(
            initial_capital=initial_capital,
            history=history,
            trades=trades,
            holdings={t: s for t, s in holdings.items() if s > 0},
            cash=round(cash, 2),
            metrics=metrics,
            data_quality=data_quality,
            warnings=warnings,
        )

    @staticmethod
    def _buy_equal(day, row, tickers, cash, holdings, trades) -> float:
        per_stock = cash / len(tickers)
        for ticker in tickers:
            price = float(row[ticker])
            shares = math.floor(per_stock / price)
            if shares <= 0:
                continue
            holdings[ticker] = shares
            cash -= shares * price
            trades.append(PortfolioTrade(day, ticker, "BUY", shares, round(price, 2)))
        return cash

    @staticmethod
    def _data_quality(prices: pd.DataFrame, tickers: List[str], start_date: date, end_date: date):
        expected = expected_trading_days(start_date, end_date)
        counts = {t: int(prices[t].notnull().sum()) for t in tickers}
        trading_days = len(prices)

        warnings = []
        threshold = expected * COMPLETENESS_WARNING
        if trading_days < threshold:
            warnings.append(f"Data may be incomplete: {trading_days} trading days found, expected ~{expected}")
        for ticker, count in counts.items():
            if count == 0:
                warnings.append(f"No data found for {ticker}")
            elif count < threshold:
                warnings.append(f"{ticker} has only {count} days of data (expected ~{expected})")

        return {
            "trading_days": trading_days,
            "expected_days": expected,
            "completeness": trading_days / expected if expected else 0.0,
            "first_date": prices.index[0],
            "last_date": prices.index[-1],
            "rows_per_ticker": counts,
        }, warnings
