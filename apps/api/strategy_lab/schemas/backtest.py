from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import date
from typing import List, Literal, Optional, Dict, Any

from strategy_lab.config import get_settings
from strategy_lab.schemas.strategy import StrategyModel

class BacktestCreate(BaseModel):
    strategy: StrategyModel
    start_date: date
    end_date: date
    initial_capital: float = Field(default_factory=lambda: get_settings().DEFAULT_INITIAL_CAPITAL, gt=0)
    # Universe override; defaults to every active asset
    tickers: Optional[List[str]] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

class TradeResponse(BaseModel):
    instrument_id: str
    title: str
    entry_date: date
    entry_price: float
    exit_date: date
    exit_price: float
    pnl: float
    pnl_percent: float
    holding_days: int
    exit_reason: str

class EquityPointResponse(BaseModel):
    date: date
    capital: float

class CategoryStats(BaseModel):
    trade_count: int
    cumulative_pnl: float

class BacktestResults(BaseModel):
    total_return: float
    win_rate: float
    sharpe_ratio: float
    max_drawdown: float
    total_trades: int
    avg_holding_period: float
    trades: List[TradeResponse] = []
    equity_curve: List[EquityPointResponse] = []
    category_breakdown: Dict[str, CategoryStats] = {}

class BacktestResultResponse(BaseModel):
    run_id: str
    status: str
    error: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    trades: List[TradeResponse] = []
    equity_curve: List[EquityPointResponse] = []
    category_breakdown: Dict[str, CategoryStats] = {}

# Portfolio backtests

class PortfolioBacktestRequest(BaseModel):
    tickers: List[str] = Field(min_length=1)
    start_date: date
    end_date: date
    initial_capital: float = Field(default_factory=lambda: get_settings().PORTFOLIO_INITIAL_CAPITAL, gt=0)
    strategy: Literal["buy_hold", "equal_weight"] = "buy_hold"
    rebalance_frequency: Literal["monthly", "quarterly"] = "monthly"

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

class PortfolioTradeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    ticker: str
    action: str
    shares: int
    price: float

class PortfolioSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: date
    value: float

class PortfolioMetrics(BaseModel):
    total_return: float
    annualized_return: float
    volatility: float
    sharpe_ratio: float
    max_drawdown: float
    initial_capital: float
    final_value: float
    trading_days: int
    years: float
    total_trades: int

class PortfolioDataQuality(BaseModel):
    trading_days: int
    expected_days: int
    completeness: float
    first_date: date
    last_date: date
    rows_per_ticker: Dict[str, int]

class PortfolioBacktestResult(BaseModel):
    metrics: PortfolioMetrics
    data_quality: PortfolioDataQuality
    warnings: List[str] = []
    portfolio_history: List[PortfolioSnapshotResponse] = []
    final_holdings: Dict[str, int] = {}
    trades: List[PortfolioTradeResponse] = []
    cash_remaining: float
