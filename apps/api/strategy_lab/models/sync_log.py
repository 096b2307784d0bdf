from sqlalchemy import Column, String, Integer, JSON, DateTime, func
from strategy_lab.database import Base

class DataSyncLog(Base):
    __tablename__ = "data_sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String, nullable=False) # full, incremental, single_ticker, validate
    status = Column(String, default="running") # running, completed, partial, failed
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    tickers_total = Column(Integer, default=0)
    tickers_succeeded = Column(Integer, default=0)
    tickers_failed = Column(Integer, default=0)
    bars_written = Column(Integer, default=0)
    errors = Column(JSON, nullable=True)
    warnings = Column(JSON, nullable=True)
    metadata_json = Column(JSON, nullable=True)
