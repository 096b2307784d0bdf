import operator
from typing import List, Mapping, Optional, Union

from strategy_lab.schemas.strategy import Condition

_OPERATORS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
}

# Metric aliases the translator is known to emit
METRIC_ALIASES = {
    "price": "current_price",
    "close": "current_price",
    "volume": "volume_24h",
    "holding_days": "days_held",
    "days_in_trade": "days_held",
    "profit": "pnl_percent",
    "loss": "pnl_percent",
    "return": "pnl_percent",
}


def _coerce(value) -> Optional[Union[float, str]]:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return str(value).strip().lower()


def lookup_metric(metrics: Mapping[str, object], name: str):
    if name in metrics:
        return metrics[name]
    alias = METRIC_ALIASES.get(name)
    if alias is not None:
        return metrics.get(alias)
    return None


def evaluate_condition(condition: Condition, metrics: Mapping[str, object]) -> bool:
    """
    Compare a metric value against the condition threshold.
    A missing metric, or an ordering comparison between a number and a string,
    evaluates to False.
    """
    left = _coerce(lookup_metric(metrics, condition.metric))
    right = _coerce(condition.value)
    if left is None or right is None:
        return False

    if isinstance(left, str) or isinstance(right, str):
        if condition.operator != "==":
            return False
        return str(left) == str(right)

    # loss thresholds given as a positive magnitude ("loss > 0.1") compare against -pnl
    if condition.type.value == "loss" and right > 0:
        left = -left

    return _OPERATORS[condition.operator](left, right)


def evaluate_conditions(conditions: List[Condition], logic: str, metrics: Mapping[str, object]) -> bool:
    """AND: every condition holds. OR: at least one does. An empty set never fires."""
    if not conditions:
        return False
    results = (evaluate_condition(c, metrics) for c in conditions)
    return all(results) if logic == "AND" else any(results)


def firing_conditions(conditions: List[Condition], metrics: Mapping[str, object]) -> List[Condition]:
    return [c for c in conditions if evaluate_condition(c, metrics)]


def describe(conditions: List[Condition], logic: str) -> str:
    return f" {logic} ".join(f"{c.metric} {c.operator} {c.value}" for c in conditions)
