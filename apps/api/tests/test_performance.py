import numpy as np
import pytest
from datetime import date, timedelta

from strategy_lab.services.backtest_engine import EquityPoint, Trade
from strategy_lab.services.performance import (
    compute_max_drawdown,
    compute_sharpe_ratio,
    compute_win_rate,
    summarize,
)


def _trade(pnl_percent, holding_days=3, size=100.0, category="other"):
    entry = 1.0
    exit_price = entry * (1 + pnl_percent)
    return Trade(
        instrument_id="AAA", title="AAA",
        entry_date=date(2024, 1, 1), entry_price=entry,
        exit_date=date(2024, 1, 1) + timedelta(days=holding_days), exit_price=exit_price,
        pnl=(exit_price - entry) * size, pnl_percent=pnl_percent,
        holding_days=holding_days, exit_reason="signal",
        category=category, size=size,
    )


def _curve(values):
    return [EquityPoint(date=date(2024, 1, 1) + timedelta(days=i), capital=v) for i, v in enumerate(values)]


def test_zero_trades_reports_zeros():
    metrics = summarize([], _curve([1_000, 1_000, 1_000]), 1_000)

    assert metrics["total_trades"] == 0
    assert metrics["total_return"] == 0
    assert metrics["win_rate"] == 0
    assert metrics["sharpe_ratio"] == 0
    assert metrics["max_drawdown"] == 0
    assert metrics["avg_holding_period"] == 0


def test_win_rate_counts_strictly_positive_pnl():
    trades = [_trade(0.1), _trade(-0.1), _trade(0.0), _trade(0.2)]
    assert compute_win_rate(trades) == pytest.approx(0.5)


def test_sharpe_uses_sample_stdev_annualized():
    returns = [0.1, -0.05, 0.2, 0.03]
    trades = [_trade(r) for r in returns]

    expected = np.mean(returns) / np.std(returns, ddof=1) * np.sqrt(252)
    assert compute_sharpe_ratio(trades) == pytest.approx(expected)


def test_sharpe_needs_two_trades_and_dispersion():
    assert compute_sharpe_ratio([_trade(0.1)]) == 0
    assert compute_sharpe_ratio([_trade(0.1), _trade(0.1)]) == 0


def test_max_drawdown_from_running_peak():
    assert compute_max_drawdown(_curve([100, 120, 90, 130, 110])) == pytest.approx(0.25)
    assert compute_max_drawdown(_curve([100, 110, 120])) == 0
    assert compute_max_drawdown([]) == 0


def test_summarize_uses_last_equity_point():
    trades = [_trade(0.1, holding_days=2), _trade(-0.05, holding_days=4)]
    metrics = summarize(trades, _curve([1_000, 1_010, 1_005]), 1_000,
                        category_breakdown={"other": {"trade_count": 2, "cumulative_pnl": 5.0}})

    assert metrics["final_capital"] == 1_005
    assert metrics["total_return"] == pytest.approx(0.005)
    assert metrics["avg_holding_period"] == pytest.approx(3)
    assert metrics["total_trades"] == 2
    assert 0 <= metrics["win_rate"] <= 1
    assert metrics["category_breakdown"]["other"]["trade_count"] == 2
