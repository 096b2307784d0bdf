import pandas as pd
import structlog
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from strategy_lab.config import get_settings
from strategy_lab.exceptions import InputError
from strategy_lab.schemas.market_data import PriceBar
from strategy_lab.schemas.strategy import StrategyModel, parse_strategy
from strategy_lab.services.conditions import describe, evaluate_conditions, firing_conditions
from strategy_lab.services.position_sizing import SIZING_POLICIES, SizingPolicy

logger = structlog.get_logger()

MOMENTUM_WINDOW = 20

# Highest priority first; decides the reason when several exits fire on one day
EXIT_PRECEDENCE = ("stop_loss", "take_profit", "time_limit", "signal")

_REASON_BY_CONDITION_TYPE = {
    "loss": "stop_loss",
    "profit": "take_profit",
    "time": "time_limit",
}


@dataclass(eq=False)
class Instrument:
    """
    Something the simulator can hold: a ticker with its daily prices and,
    optionally, externally supplied per-day metrics (sentiment, whale flow...).

    prices: DatetimeIndex -> open, high, low, close, volume
    signals: DatetimeIndex -> one column per metric
    """
    instrument_id: str
    prices: pd.DataFrame
    title: str = ""
    category: Optional[str] = None
    signals: Optional[pd.DataFrame] = None
    _metrics: pd.DataFrame = field(init=False, repr=False)

    def __post_init__(self):
        self.title = self.title or self.instrument_id
        self.prices = self.prices.sort_index()

        close = self.prices['close']
        metrics = pd.DataFrame(index=self.prices.index)
        metrics['current_price'] = close
        metrics['price_change_24h'] = close.pct_change()
        metrics['volume_24h'] = self.prices['volume'] if 'volume' in self.prices else None
        metrics['momentum_score'] = close / close.shift(MOMENTUM_WINDOW) - 1

        if self.signals is not None and not self.signals.empty:
            metrics = metrics.join(self.signals, how='left', rsuffix='_signal')
        self._metrics = metrics

    @classmethod
    def from_bars(cls, instrument_id: str, bars: Sequence[PriceBar], title: str = "",
                  category: Optional[str] = None,
                  signals: Optional[Mapping[date, Mapping[str, float]]] = None) -> "Instrument":
        prices = pd.DataFrame(
            [{'date': b.date, 'open': b.open, 'high': b.high, 'low': b.low,
              'close': b.close, 'volume': b.volume} for b in bars],
            columns=['date', 'open', 'high', 'low', 'close', 'volume'],
        )
        prices['date'] = pd.to_datetime(prices['date'])
        prices = prices.drop_duplicates(subset='date', keep='last').set_index('date')

        sig_df = None
        if signals:
            sig_df = pd.DataFrame.from_dict(
                {pd.Timestamp(d): dict(v) for d, v in signals.items()}, orient='index'
            ).sort_index()

        return cls(instrument_id=instrument_id, prices=prices, title=title,
                   category=category, signals=sig_df)

    def metrics_on(self, ts: pd.Timestamp) -> Dict[str, Any]:
        """Metric values for a day with a bar; empty on days without one."""
        if ts not in self._metrics.index:
            return {}
        row = self._metrics.loc[ts]
        return {k: v for k, v in row.items() if pd.notnull(v)}

    def price_on_or_before(self, ts: pd.Timestamp) -> Optional[float]:
        close = self.prices['close']
        if close.empty or ts < close.index[0]:
            return None
        value = close.asof(ts)
        return None if pd.isnull(value) else float(value)


@dataclass(eq=False)
class Position:
    instrument_id: str
    entry_price: float
    entry_date: date
    size: float
    source_record: Instrument


@dataclass(frozen=True)
class Trade:
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
    category: str = "other"
    size: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EquityPoint:
    date: date
    capital: float


@dataclass
class SimulationContext:
    """All mutable state of one run. Never shared between runs."""
    capital: float
    cash: float
    open_positions: Dict[str, Position] = field(default_factory=dict)
    trades: List[Trade] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    category_breakdown: Dict[str, Dict[str, float]] = field(default_factory=dict)


@dataclass
class BacktestOutcome:
    initial_capital: float
    final_capital: float
    trades: List[Trade]
    equity_curve: List[EquityPoint]
    category_breakdown: Dict[str, Dict[str, float]]
    open_positions: List[Position]


def _as_date(value, name: str) -> date:
    if value is None or value == "":
        raise InputError(f"{name} is required")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return pd.to_datetime(value).date()
    except (TypeError, ValueError) as e:
        raise InputError(f"{name} is not a valid date: {value!r}") from e


class BacktestEngine:
    def __init__(self, max_holding_days: Optional[int] = None,
                 position_fraction: Optional[float] = None,
                 sizing_policies: Optional[Mapping[str, SizingPolicy]] = None):
        settings = get_settings()
        self.max_holding_days = max_holding_days or settings.MAX_HOLDING_DAYS
        self.position_fraction = position_fraction or settings.DEFAULT_POSITION_FRACTION
        self.sizing_policies = dict(sizing_policies or SIZING_POLICIES)

    def validate(self, strategy, start_date, end_date, initial_capital):
        """Reject bad input before any simulation work. Returns normalized values."""
        strategy = parse_strategy(strategy)
        start = _as_date(start_date, "start_date")
        end = _as_date(end_date, "end_date")
        if end < start:
            raise InputError("end_date must not be before start_date")

        try:
            capital = float(initial_capital)
        except (TypeError, ValueError) as e:
            raise InputError(f"initial_capital must be a number: {initial_capital!r}") from e
        if not capital > 0:
            raise InputError("initial_capital must be positive")

        if strategy.position_sizing.value not in self.sizing_policies:
            raise InputError(f"Unknown position sizing policy: {strategy.position_sizing.value}")

        return strategy, start, end, capital

    def run(self, strategy, start_date, end_date, initial_capital,
            instruments: Iterable[Instrument]) -> BacktestOutcome:
        """
        Walk every calendar day in [start_date, end_date]:
        1. exits for open positions, 2. entries up to max_positions,
        3. one equity point with the day's realized capital.
        """
        strategy, start, end, capital = self.validate(strategy, start_date, end_date, initial_capital)

        universe = sorted(instruments, key=lambda i: i.instrument_id)
        by_id = {i.instrument_id: i for i in universe}
        if len(by_id) != len(universe):
            raise InputError("Duplicate instrument ids in universe")

        sizing = self.sizing_policies[strategy.position_sizing.value]
        fraction = strategy.position_fraction or self.position_fraction
        max_holding = strategy.max_holding_days or self.max_holding_days

        logger.info("Backtest started", strategy=strategy.name, start=str(start), end=str(end),
                    instruments=len(universe), capital=capital,
                    entry=describe(strategy.entry_conditions, strategy.entry_logic))

        ctx = SimulationContext(capital=capital, cash=capital)

        today = start
        while today <= end:
            ts = pd.Timestamp(today)

            # 1. Exits
            for inst_id in sorted(ctx.open_positions):
                pos = ctx.open_positions[inst_id]
                price = pos.source_record.price_on_or_before(ts)
                if price is None:
                    continue

                days_held = (today - pos.entry_date).days
                pnl_percent = (price - pos.entry_price) / pos.entry_price

                metrics = pos.source_record.metrics_on(ts)
                metrics.update({
                    'current_price': price,
                    'days_held': days_held,
                    'pnl_percent': pnl_percent,
                })

                reason = self._exit_reason(strategy, days_held, pnl_percent, max_holding, metrics)
                if reason:
                    self._close(ctx, pos, today, price, days_held, reason)

            # 2. Entries
            for inst in universe:
                if len(ctx.open_positions) >= strategy.max_positions:
                    break
                if inst.instrument_id in ctx.open_positions:
                    continue
                if strategy.category_filter and inst.category != strategy.category_filter:
                    continue

                metrics = inst.metrics_on(ts)
                if not metrics:
                    continue # no bar today
                entry_price = metrics.get('current_price')
                if entry_price is None or entry_price <= 0:
                    continue

                if not evaluate_conditions(strategy.entry_conditions, strategy.entry_logic, metrics):
                    continue

                size = min(sizing(ctx.capital, strategy, ctx.trades, fraction), ctx.cash)
                if size <= 0:
                    continue

                ctx.cash -= size
                ctx.open_positions[inst.instrument_id] = Position(
                    instrument_id=inst.instrument_id,
                    entry_price=float(entry_price),
                    entry_date=today,
                    size=size,
                    source_record=inst,
                )

            # 3. End of day
            ctx.equity_curve.append(EquityPoint(date=today, capital=ctx.capital))
            today += timedelta(days=1)

        logger.info("Backtest finished", strategy=strategy.name, trades=len(ctx.trades),
                    final_capital=round(ctx.capital, 2), still_open=len(ctx.open_positions))

        return BacktestOutcome(
            initial_capital=capital,
            final_capital=ctx.capital,
            trades=list(ctx.trades),
            equity_curve=list(ctx.equity_curve),
            category_breakdown={k: dict(v) for k, v in ctx.category_breakdown.items()},
            open_positions=list(ctx.open_positions.values()),
        )

    def _exit_reason(self, strategy: StrategyModel, days_held: int, pnl_percent: float,
                     max_holding: int, metrics: Mapping[str, Any]) -> Optional[str]:
        reasons = set()

        if strategy.stop_loss is not None and pnl_percent <= -strategy.stop_loss:
            reasons.add("stop_loss")
        if strategy.take_profit is not None and pnl_percent >= strategy.take_profit:
            reasons.add("take_profit")
        if days_held >= max_holding:
            reasons.add("time_limit")

        if evaluate_conditions(strategy.exit_conditions, strategy.exit_logic, metrics):
            fired = firing_conditions(strategy.exit_conditions, metrics)
            reasons.update(_REASON_BY_CONDITION_TYPE.get(c.type.value, "signal") for c in fired)

        for reason in EXIT_PRECEDENCE:
            if reason in reasons:
                return reason
        return None

    def _close(self, ctx: SimulationContext, pos: Position, today: date, exit_price: float,
               days_held: int, reason: str):
        pnl = (exit_price - pos.entry_price) * pos.size
        pnl_percent = (exit_price - pos.entry_price) / pos.entry_price
        category = pos.source_record.category or "other"

        ctx.trades.append(Trade(
            instrument_id=pos.instrument_id,
            title=pos.source_record.title,
            entry_date=pos.entry_date,
            entry_price=pos.entry_price,
            exit_date=today,
            exit_price=exit_price,
            pnl=pnl,
            pnl_percent=pnl_percent,
            holding_days=days_held,
            exit_reason=reason,
            category=category,
            size=pos.size,
        ))

        ctx.capital += pnl
        ctx.cash += pos.size + pnl
        del ctx.open_positions[pos.instrument_id]

        stats = ctx.category_breakdown.setdefault(category, {"trade_count": 0, "cumulative_pnl": 0.0})
        stats["trade_count"] += 1
        stats["cumulative_pnl"] += pnl
