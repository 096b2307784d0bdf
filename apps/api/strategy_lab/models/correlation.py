from sqlalchemy import Column, String, Float, Integer, DateTime, CheckConstraint, PrimaryKeyConstraint, func
from strategy_lab.database import Base

class TickerCorrelation(Base):
    __tablename__ = "ticker_correlations"

    ticker_a = Column(String, nullable=False, index=True)
    ticker_b = Column(String, nullable=False, index=True)
    period_days = Column(Integer, nullable=False)
    correlation = Column(Float, nullable=False)
    calculated_at = Column(DateTime, server_default=func.now())

    # Each pair is stored once, alphabetically ordered
    __table_args__ = (
        PrimaryKeyConstraint('ticker_a', 'ticker_b', 'period_days'),
        CheckConstraint('ticker_a < ticker_b', name='ck_ticker_correlations_order'),
    )
