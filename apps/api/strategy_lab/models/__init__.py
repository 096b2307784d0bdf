from .asset import Asset
from .price import PriceDaily
from .signal import SignalDaily
from .sync_log import DataSyncLog
from .backtest import BacktestRun, BacktestTrade, BacktestEquity
from .correlation import TickerCorrelation
