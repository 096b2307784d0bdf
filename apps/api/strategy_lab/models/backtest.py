from sqlalchemy import Column, String, Date, Float, Integer, ForeignKey, JSON, DateTime, func
from strategy_lab.database import Base

class BacktestRun(Base):
    __tablename__ = "backtest_runs"

    run_id = Column(String, primary_key=True)
    created_at = Column(DateTime, server_default=func.now())
    params_json = Column(JSON, nullable=False)
    status = Column(String, default="PENDING") # PENDING, RUNNING, COMPLETED, FAILED
    results_json = Column(JSON, nullable=True)
    error = Column(String, nullable=True)

class BacktestTrade(Base):
    __tablename__ = "backtest_trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("backtest_runs.run_id"), nullable=False)
    instrument_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    category = Column(String, nullable=True)
    entry_date = Column(Date, nullable=False)
    entry_price = Column(Float, nullable=False)
    exit_date = Column(Date, nullable=False)
    exit_price = Column(Float, nullable=False)
    size = Column(Float, nullable=False)
    pnl = Column(Float, nullable=False)
    pnl_percent = Column(Float, nullable=False)
    holding_days = Column(Integer, nullable=False)
    exit_reason = Column(String, nullable=False) # time_limit, take_profit, stop_loss, signal

class BacktestEquity(Base):
    __tablename__ = "backtest_equity_curve"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("backtest_runs.run_id"), nullable=False)
    date = Column(Date, nullable=False)
    capital = Column(Float, nullable=False)
