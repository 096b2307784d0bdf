"""
Position sizing policies.

Every policy has the signature
    policy(capital, strategy, closed_trades, fraction) -> size
where size is the currency amount to commit to a new position and `fraction`
is the fixed fraction of capital in effect for the run.
"""
from typing import Callable, Dict, List, Optional

import numpy as np

from strategy_lab.schemas.strategy import PositionSizing, StrategyModel

SizingPolicy = Callable[[float, StrategyModel, List, float], float]

KELLY_MIN_TRADES = 10


def fixed_size(capital: float, strategy: StrategyModel, closed_trades: List, fraction: float) -> float:
    return capital * fraction


def equal_weight_size(capital: float, strategy: StrategyModel, closed_trades: List, fraction: float) -> float:
    return capital / strategy.max_positions


def kelly_fraction(closed_trades: List, min_trades: int = KELLY_MIN_TRADES) -> Optional[float]:
    """
    f* = W - (1 - W) / R from the run's own closed trades, where W is the win
    rate and R the ratio of average win to average loss. None until there are
    enough trades with at least one win and one loss.
    """
    if len(closed_trades) < min_trades:
        return None

    returns = np.array([t.pnl_percent for t in closed_trades], dtype=float)
    wins = returns[returns > 0]
    losses = returns[returns < 0]
    if len(wins) == 0 or len(losses) == 0:
        return None

    win_rate = len(wins) / len(returns)
    payoff = wins.mean() / abs(losses.mean())
    f = win_rate - (1 - win_rate) / payoff
    return float(min(max(f, 0.0), 1.0))


def kelly_policy(multiplier: float) -> SizingPolicy:
    def size(capital: float, strategy: StrategyModel, closed_trades: List, fraction: float) -> float:
        f = kelly_fraction(closed_trades)
        if f is None:
            return capital * fraction
        return capital * f * multiplier
    return size


SIZING_POLICIES: Dict[str, SizingPolicy] = {
    PositionSizing.FIXED.value: fixed_size,
    PositionSizing.EQUAL_WEIGHT.value: equal_weight_size,
    PositionSizing.KELLY.value: kelly_policy(1.0),
    PositionSizing.KELLY_HALF.value: kelly_policy(0.5),
    PositionSizing.KELLY_QUARTER.value: kelly_policy(0.25),
}


def register_sizing_policy(name: str, policy: SizingPolicy):
    SIZING_POLICIES[name] = policy


def get_sizing_policy(name) -> SizingPolicy:
    key = name.value if isinstance(name, PositionSizing) else str(name)
    return SIZING_POLICIES[key]
