from sqlalchemy import Column, String, Boolean, Date, Integer, DateTime, func
from strategy_lab.database import Base

class Asset(Base):
    __tablename__ = "asset_universe"

    ticker = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=True)
    category = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    data_start_date = Column(Date, nullable=True)
    data_end_date = Column(Date, nullable=True)
    total_bars = Column(Integer, default=0)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
