import time
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional

from strategy_lab.schemas.market_data import PriceBar
from strategy_lab.services.data_provider import (
    MarketDataSource, SourceResult, STATUS_NO_DATA, STATUS_OK,
)


def make_bars(ticker: str, start: date, days: int,
              price: Optional[Callable[[int], float]] = None,
              skip_weekends: bool = False) -> List[PriceBar]:
    price = price or (lambda i: 100.0 + i)
    bars = []
    for i in range(days):
        d = start + timedelta(days=i)
        if skip_weekends and d.weekday() >= 5:
            continue
        p = price(i)
        bars.append(PriceBar(
            ticker=ticker, date=d,
            open=p, high=p * 1.01, low=p * 0.99, close=p, volume=1_000 + i,
        ))
    return bars


class FakeSource(MarketDataSource):
    """In-memory market data source. Errors are raised per ticker."""
    name = "fake"

    def __init__(self):
        self.bars: Dict[str, List[PriceBar]] = {}
        self.errors: Dict[str, Exception] = {}
        self.status = STATUS_OK
        self.delay = 0.0
        self.calls = []

    def add(self, ticker: str, bars: List[PriceBar]):
        self.bars[ticker] = bars

    def get_daily_bars(self, ticker, start_date, end_date):
        self.calls.append((ticker, start_date, end_date))
        if self.delay:
            time.sleep(self.delay)
        if ticker in self.errors:
            raise self.errors[ticker]
        bars = [b for b in self.bars.get(ticker, []) if start_date <= b.date <= end_date]
        if not bars:
            return SourceResult(status=STATUS_NO_DATA)
        return SourceResult(status=self.status, bars=bars)
