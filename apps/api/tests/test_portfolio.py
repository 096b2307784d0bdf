import pytest
from datetime import date

from strategy_lab.exceptions import InputError
from strategy_lab.services.portfolio import (
    PortfolioBacktester,
    PortfolioSnapshot,
    portfolio_metrics,
    price_matrix,
)

from factories import make_bars

START = date(2024, 1, 30)
END = date(2024, 4, 2)
DAYS = (END - START).days + 1


def _flat_prices(days=DAYS):
    return price_matrix({
        "AAA": make_bars("AAA", START, days, price=lambda i: 10.0),
        "BBB": make_bars("BBB", START, days, price=lambda i: 30.0),
    })


def _history(values):
    return [PortfolioSnapshot(date=date(2024, 1, i + 1), value=v) for i, v in enumerate(values)]


def test_price_matrix_treats_non_positive_close_as_missing():
    bars = make_bars("AAA", START, 3, price=lambda i: [10.0, 0.0, 12.0][i])
    prices = price_matrix({"AAA": bars, "BBB": []})

    assert list(prices.columns) == ["AAA"]
    assert prices["AAA"].isnull().tolist() == [False, True, False]


def test_buy_hold_buys_whole_shares_and_keeps_cash():
    outcome = PortfolioBacktester(risk_free_rate=0.0).run(
        _flat_prices(), ["AAA", "BBB"], START, END, 1_000.0, "buy_hold")

    assert outcome.holdings == {"AAA": 50, "BBB": 16}
    assert outcome.cash == 20.0
    assert [t.action for t in outcome.trades] == ["BUY", "BUY"]
    assert len(outcome.history) == DAYS
    assert all(p.value == 1_000.0 for p in outcome.history)
    assert outcome.metrics["total_return"] == 0
    assert outcome.metrics["total_trades"] == 2
    assert outcome.warnings == []


def test_equal_weight_rebalances_on_new_month():
    outcome = PortfolioBacktester().run(
        _flat_prices(), ["AAA", "BBB"], START, END, 1_000.0, "equal_weight", "monthly")

    # initial buys, then sell + rebuy both on Feb 1, Mar 1 and Apr 1
    assert len(outcome.trades) == 2 + 3 * 4
    rebalance_days = sorted({t.date for t in outcome.trades if t.action == "SELL"})
    assert rebalance_days == [date(2024, 2, 1), date(2024, 3, 1), date(2024, 4, 1)]
    assert outcome.holdings == {"AAA": 50, "BBB": 16}


def test_equal_weight_quarterly_rebalances_less_often():
    outcome = PortfolioBacktester().run(
        _flat_prices(), ["AAA", "BBB"], START, END, 1_000.0, "equal_weight", "quarterly")

    sells = [t for t in outcome.trades if t.action == "SELL"]
    assert {t.date for t in sells} == {date(2024, 4, 1)}
    assert len(outcome.trades) == 2 + 4


def test_valuation_carries_last_close_over_gaps():
    bbb = make_bars("BBB", START, 10, price=lambda i: 30.0)
    del bbb[4]
    prices = price_matrix({"AAA": make_bars("AAA", START, 10, price=lambda i: 10.0), "BBB": bbb})

    outcome = PortfolioBacktester().run(prices, ["AAA", "BBB"], START, END, 1_000.0)

    assert [p.value for p in outcome.history] == [1_000.0] * 10


def test_sharpe_subtracts_risk_free_rate():
    history = _history([100.0, 102.0, 101.0, 104.0, 103.5, 106.0])
    plain = portfolio_metrics(history, 100.0, risk_free_rate=0.0)
    with_rf = portfolio_metrics(history, 100.0, risk_free_rate=0.04)

    assert plain["volatility"] > 0
    assert plain["sharpe_ratio"] - with_rf["sharpe_ratio"] == pytest.approx(0.04 / plain["volatility"])
    assert plain["years"] == pytest.approx(6 / 252)


def test_default_risk_free_rate_comes_from_settings():
    assert PortfolioBacktester().risk_free_rate == pytest.approx(0.04)


def test_max_drawdown_measures_from_running_peak():
    metrics = portfolio_metrics(_history([100.0, 120.0, 90.0, 130.0]), 100.0, 0.04)
    assert metrics["max_drawdown"] == pytest.approx(0.25)
    assert metrics["final_value"] == 130.0
    assert metrics["total_return"] == pytest.approx(0.3)

    # losses from the first day count against initial capital
    metrics = portfolio_metrics(_history([80.0, 90.0]), 100.0, 0.04)
    assert metrics["max_drawdown"] == pytest.approx(0.2)


def test_incomplete_data_is_reported():
    prices = _flat_prices(days=10)
    outcome = PortfolioBacktester().run(
        prices, ["AAA", "BBB", "CCC"], date(2024, 1, 1), date(2024, 12, 31), 1_000.0)

    assert outcome.data_quality["trading_days"] == 10
    assert outcome.data_quality["rows_per_ticker"]["CCC"] == 0
    assert outcome.data_quality["first_date"] == START
    assert any(w.startswith("Data may be incomplete") for w in outcome.warnings)
    assert "No data found for CCC" in outcome.warnings
    assert "CCC" not in outcome.holdings


@pytest.mark.parametrize("kwargs", [
    {"strategy": "momentum"},
    {"rebalance_frequency": "weekly"},
    {"initial_capital": 0},
])
def test_rejects_bad_input(kwargs):
    args = {"initial_capital": 1_000.0, **kwargs}
    with pytest.raises(InputError):
        PortfolioBacktester().run(_flat_prices(), ["AAA"], START, END, **args)


def test_rejects_missing_prices():
    with pytest.raises(InputError):
        PortfolioBacktester().run(_flat_prices(), ["ZZZ"], START, END, 1_000.0)
