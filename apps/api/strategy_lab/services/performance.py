"""
Summary statistics for a finished backtest.

Every ratio that could divide by zero is guarded and reported as 0.
"""
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

TRADING_DAYS_PER_YEAR = 252


def compute_total_return(initial_capital: float, final_capital: float) -> float:
    if initial_capital <= 0:
        return 0.0
    return (final_capital - initial_capital) / initial_capital


def compute_win_rate(trades: Sequence) -> float:
    if not trades:
        return 0.0
    winners = sum(1 for t in trades if t.pnl > 0)
    return winners / len(trades)


def compute_avg_holding_period(trades: Sequence) -> float:
    if not trades:
        return 0.0
    return float(np.mean([t.holding_days for t in trades]))


def compute_sharpe_ratio(trades: Sequence, periods_per_year: int = TRADING_DAYS_PER_YEAR) -> float:
    """
    mean(pnl_percent) / stdev(pnl_percent) * sqrt(periods_per_year), using the
    sample (n-1) standard deviation of per-trade returns.
    """
    if len(trades) < 2:
        return 0.0
    returns = pd.Series([t.pnl_percent for t in trades], dtype=float)
    std = returns.std(ddof=1)
    if not std > 0:
        return 0.0
    return float(returns.mean() / std * np.sqrt(periods_per_year))


def compute_max_drawdown(equity_curve: Sequence) -> float:
    """Largest (peak - capital) / peak along the curve, as a positive fraction."""
    if not equity_curve:
        return 0.0
    series = pd.Series([p.capital for p in equity_curve], dtype=float)
    peak = series.cummax()
    drawdown = (peak - series) / peak.where(peak > 0)
    max_dd = drawdown.max()
    return 0.0 if pd.isnull(max_dd) else float(max(max_dd, 0.0))


def summarize(trades: List, equity_curve: List, initial_capital: float,
              category_breakdown: Optional[Dict[str, Dict[str, float]]] = None,
              final_capital: Optional[float] = None) -> Dict:
    """
    Build the results metrics for a run. Final capital is the last equity
    point unless given explicitly; with an empty curve it is initial_capital.
    """
    if final_capital is None:
        final_capital = equity_curve[-1].capital if equity_curve else initial_capital

    return {
        "total_return": compute_total_return(initial_capital, final_capital),
        "win_rate": compute_win_rate(trades),
        "sharpe_ratio": compute_sharpe_ratio(trades),
        "max_drawdown": compute_max_drawdown(equity_curve),
        "total_trades": len(trades),
        "avg_holding_period": compute_avg_holding_period(trades),
        "final_capital": final_capital,
        "category_breakdown": dict(category_breakdown or {}),
    }
