from sqlalchemy import Column, String, Date, Float, BigInteger, Integer, PrimaryKeyConstraint
from strategy_lab.database import Base

class PriceDaily(Base):
    __tablename__ = "market_daily_bars"

    ticker = Column(String, nullable=False)
    bar_date = Column(Date, nullable=False)
    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(BigInteger, nullable=False)
    vwap = Column(Float, nullable=True)
    transactions = Column(Integer, nullable=True)
    daily_return = Column(Float, nullable=True)
    log_return = Column(Float, nullable=True)

    # One row per (ticker, day); upserts conflict on this key
    __table_args__ = (
        PrimaryKeyConstraint('ticker', 'bar_date'),
    )
