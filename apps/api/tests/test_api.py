import pytest
import pytest_asyncio
from datetime import date
from httpx import ASGITransport, AsyncClient

from strategy_lab.database import get_db
from strategy_lab.main import app
from strategy_lab.routers.market_data import get_price_provider

from factories import make_bars

START = date(2024, 1, 1)
END = date(2024, 3, 31)
DAYS = (END - START).days + 1

STRATEGY = {
    "strategy_name": "Hold five days",
    "entry_conditions": [{"type": "price", "metric": "current_price", "operator": ">", "value": 0}],
    "exit_conditions": [{"type": "time", "metric": "days_held", "operator": ">=", "value": 5}],
    "max_positions": 2,
}


@pytest_asyncio.fixture
async def client(session_factory, provider, fake_source):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    fake_source.add("AAA", make_bars("AAA", START, DAYS))
    fake_source.add("BBB", make_bars("BBB", START, DAYS, price=lambda i: 50.0 - 0.1 * i))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_price_provider] = lambda: provider
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _register_assets(client):
    res = await client.post("/api/v1/market-data/assets", json=[
        {"ticker": "aaa", "name": "Alpha", "category": "crypto"},
        {"ticker": "BBB", "category": "politics"},
    ])
    assert res.status_code == 200


@pytest.mark.asyncio
async def test_health(client):
    res = await client.get("/health")
    assert res.status_code == 200
    assert res.json()["database"] == "connected"


@pytest.mark.asyncio
async def test_fetch_batch_then_coverage(client, fake_source):
    res = await client.post("/api/v1/market-data/fetch-batch", json={
        "tickers": ["AAA", "BBB", "ZZZ"],
        "start_date": str(START),
        "end_date": str(END),
    })
    assert res.status_code == 200
    body = res.json()
    assert body["summary"]["total"] == 3
    assert body["summary"]["from_api"] == 2
    assert body["results"]["ZZZ"]["row_count"] == 0
    assert body["results"]["AAA"]["row_count"] == DAYS

    res = await client.get("/api/v1/market-data/coverage/AAA",
                           params={"start_date": str(START), "end_date": str(END)})
    assert res.json()["count"] == DAYS
    assert res.json()["ratio"] >= 0.9

    res = await client.get("/api/v1/market-data/bars/aaa",
                           params={"start_date": str(START), "end_date": "2024-01-10"})
    assert res.json()["count"] == 10

    # cached now, no second upstream call
    calls = len(fake_source.calls)
    res = await client.post("/api/v1/market-data/fetch-batch", json={
        "tickers": ["AAA"], "start_date": str(START), "end_date": str(END),
    })
    assert res.json()["summary"]["from_cache"] == 1
    assert len(fake_source.calls) == calls

    res = await client.delete("/api/v1/market-data/cache", params={"ticker": "AAA"})
    assert res.json()["message"] == f"Deleted {DAYS} cached bars."


@pytest.mark.asyncio
async def test_fetch_batch_rejects_reversed_range(client):
    res = await client.post("/api/v1/market-data/fetch-batch", json={
        "tickers": ["AAA"], "start_date": str(END), "end_date": str(START),
    })
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_backtest_sync_run(client):
    await _register_assets(client)

    res = await client.post("/api/v1/backtest/run/sync", json={
        "strategy": STRATEGY,
        "start_date": str(START),
        "end_date": str(END),
        "initial_capital": 10_000,
    })
    assert res.status_code == 200
    body = res.json()

    assert body["total_trades"] == len(body["trades"]) > 0
    assert len(body["equity_curve"]) == DAYS
    assert 0 <= body["win_rate"] <= 1
    assert body["max_drawdown"] >= 0
    assert set(body["category_breakdown"]) == {"crypto", "politics"}
    assert {t["title"] for t in body["trades"]} == {"Alpha", "BBB"}

    final = body["equity_curve"][-1]["capital"]
    assert final == pytest.approx(10_000 + sum(t["pnl"] for t in body["trades"]))
    assert body["total_return"] == pytest.approx((final - 10_000) / 10_000)


@pytest.mark.asyncio
async def test_backtest_background_run(client):
    await _register_assets(client)

    res = await client.post("/api/v1/backtest/run", json={
        "strategy": STRATEGY,
        "start_date": str(START),
        "end_date": str(END),
        "tickers": ["AAA"],
    })
    assert res.status_code == 200
    assert res.json()["status"] == "PENDING"
    run_id = res.json()["run_id"]

    # ASGITransport returns once background tasks are done
    res = await client.get(f"/api/v1/backtest/{run_id}")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "COMPLETED"
    assert body["error"] is None
    assert body["metrics"]["total_trades"] == len(body["trades"]) > 0
    assert {t["instrument_id"] for t in body["trades"]} == {"AAA"}
    assert len(body["equity_curve"]) == DAYS
    assert "crypto" in body["category_breakdown"]


@pytest.mark.asyncio
async def test_backtest_with_no_data_still_completes(client):
    res = await client.post("/api/v1/backtest/run/sync", json={
        "strategy": STRATEGY,
        "start_date": str(START),
        "end_date": "2024-01-10",
        "tickers": ["ZZZ"],
    })
    assert res.status_code == 200
    body = res.json()
    assert body["total_trades"] == 0
    assert body["sharpe_ratio"] == 0
    assert len(body["equity_curve"]) == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"strategy": {**STRATEGY, "max_positions": 0}, "start_date": "2024-01-01", "end_date": "2024-02-01"},
    {"strategy": {**STRATEGY, "entry_conditions": []}, "start_date": "2024-01-01", "end_date": "2024-02-01"},
    {"strategy": STRATEGY, "start_date": "2024-02-01", "end_date": "2024-01-01"},
    {"strategy": STRATEGY, "start_date": "2024-01-01", "end_date": "2024-02-01", "initial_capital": 0},
])
async def test_backtest_rejects_bad_input(client, payload):
    res = await client.post("/api/v1/backtest/run", json=payload)
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_unknown_run_is_404(client):
    res = await client.get("/api/v1/backtest/does-not-exist")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_sync_single_ticker_updates_asset(client, session_factory):
    await _register_assets(client)

    res = await client.post("/api/v1/market-data/sync", json={
        "mode": "single_ticker",
        "tickers": ["AAA", "ZZZ"],
        "start_date": str(START),
        "end_date": str(END),
    })
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "partial"
    assert body["tickers_succeeded"] == 1
    assert body["tickers_failed"] == 1
    assert body["bars_written"] == DAYS
    assert body["errors"][0]["ticker"] == "ZZZ"

    from strategy_lab.models import Asset
    async with session_factory() as session:
        asset = await session.get(Asset, "AAA")
    assert asset.total_bars == DAYS
    assert asset.data_end_date == END

    res = await client.post("/api/v1/market-data/sync", json={"mode": "validate"})
    assert res.json()["status"] == "completed"
    assert res.json()["stats"]["total_bars"] == DAYS
    assert res.json()["stats"]["issues"] == []


@pytest.mark.asyncio
async def test_sync_single_ticker_requires_tickers(client):
    res = await client.post("/api/v1/market-data/sync", json={"mode": "single_ticker"})
    assert res.status_code == 400


def test_database_url_uses_async_drivers():
    from strategy_lab.database import async_database_url

    assert async_database_url("postgresql://u:p@db/lab") == "postgresql+asyncpg://u:p@db/lab"
    assert async_database_url("sqlite:///./lab.db") == "sqlite+aiosqlite:///./lab.db"
    assert async_database_url("sqlite+aiosqlite:///./lab.db") == "sqlite+aiosqlite:///./lab.db"


@pytest.mark.asyncio
async def test_full_sync_refreshes_correlations(client, session_factory):
    await _register_assets(client)

    res = await client.post("/api/v1/market-data/sync", json={
        "mode": "full",
        "start_date": str(START),
        "end_date": str(END),
    })
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "completed"
    assert body["correlation_pairs"] == 1
    assert body["warnings"] == []

    res = await client.get("/api/v1/market-data/correlations", params={"tickers": ["bbb"]})
    assert res.status_code == 200
    pairs = res.json()
    assert len(pairs) == 1
    assert (pairs[0]["ticker_a"], pairs[0]["ticker_b"]) == ("AAA", "BBB")
    assert pairs[0]["period_days"] == 252
    assert -1 <= pairs[0]["correlation"] <= 1

    from strategy_lab.models import DataSyncLog
    async with session_factory() as session:
        log = await session.get(DataSyncLog, body["sync_id"])
    assert log.status == "completed"
    assert log.completed_at is not None


@pytest.mark.asyncio
async def test_portfolio_backtest(client):
    res = await client.post("/api/v1/backtest/portfolio", json={
        "tickers": ["AAA", "BBB"],
        "start_date": str(START),
        "end_date": str(END),
        "initial_capital": 10_000,
        "strategy": "equal_weight",
        "rebalance_frequency": "monthly",
    })
    assert res.status_code == 200
    body = res.json()
    assert len(body["portfolio_history"]) == DAYS
    assert body["portfolio_history"][0]["date"] == str(START)
    assert set(body["final_holdings"]) == {"AAA", "BBB"}
    assert body["metrics"]["initial_capital"] == 10_000
    assert body["metrics"]["total_trades"] == len(body["trades"])
    assert {t["action"] for t in body["trades"]} == {"BUY", "SELL"}
    assert body["data_quality"]["rows_per_ticker"] == {"AAA": DAYS, "BBB": DAYS}
    assert body["warnings"] == []


@pytest.mark.asyncio
async def test_portfolio_backtest_without_data_is_400(client):
    res = await client.post("/api/v1/backtest/portfolio", json={
        "tickers": ["ZZZ"],
        "start_date": str(START),
        "end_date": str(END),
    })
    assert res.status_code == 400


def test_run_serves_app_with_uvicorn(monkeypatch):
    import uvicorn
    from strategy_lab import main

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda target, **kw: calls.append((target, kw)))
    main.run()

    assert calls == [("strategy_lab.main:app", {
        "host": main.settings.API_HOST,
        "port": main.settings.API_PORT,
        "log_level": main.settings.LOG_LEVEL.lower(),
    })]
