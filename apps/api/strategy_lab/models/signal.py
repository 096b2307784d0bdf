from sqlalchemy import Column, String, Date, Float, PrimaryKeyConstraint
from strategy_lab.database import Base

class SignalDaily(Base):
    """Externally supplied per-day metrics (kol_sentiment, whale_buy_volume_24h, ...)."""
    __tablename__ = "market_signals_daily"

    ticker = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    metric = Column(String, nullable=False)
    value = Column(Float, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint('ticker', 'date', 'metric'),
    )
