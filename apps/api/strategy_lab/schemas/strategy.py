from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from strategy_lab.exceptions import InputError


class ConditionType(str, Enum):
    SENTIMENT = "sentiment"
    WHALE = "whale"
    PRICE = "price"
    VOLUME = "volume"
    TIME = "time"
    PROFIT = "profit"
    LOSS = "loss"


class PositionSizing(str, Enum):
    FIXED = "fixed"
    KELLY = "kelly"
    KELLY_HALF = "kelly_half"
    KELLY_QUARTER = "kelly_quarter"
    EQUAL_WEIGHT = "equal_weight"


Operator = Literal[">", "<", ">=", "<=", "=="]
Logic = Literal["AND", "OR"]


class Condition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ConditionType
    metric: str = Field(min_length=1)
    operator: Operator
    value: Union[float, str]


class StrategyModel(BaseModel):
    """
    Structured trading strategy, as returned by the text-to-rules translator.

    stop_loss / take_profit are fractions of entry price (0.05 = 5%).
    max_holding_days falls back to settings.MAX_HOLDING_DAYS when omitted.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(alias="strategy_name", min_length=1)
    entry_conditions: List[Condition] = Field(min_length=1)
    entry_logic: Logic = "AND"
    exit_conditions: List[Condition] = []
    exit_logic: Logic = "OR"
    position_sizing: PositionSizing = PositionSizing.FIXED
    max_positions: int = Field(gt=0)
    category_filter: Optional[str] = None

    stop_loss: Optional[float] = Field(default=None, gt=0, le=1)
    take_profit: Optional[float] = Field(default=None, gt=0)
    max_holding_days: Optional[int] = Field(default=None, gt=0)
    position_fraction: Optional[float] = Field(default=None, gt=0, le=1)

    @model_validator(mode="before")
    @classmethod
    def _normalize_logic(cls, data):
        # Translator output is not always upper-cased
        if isinstance(data, dict):
            data = dict(data)
            for key in ("entry_logic", "exit_logic"):
                if isinstance(data.get(key), str):
                    data[key] = data[key].strip().upper()
            if data.get("category_filter") in ("", "all", "null"):
                data["category_filter"] = None
        return data


def parse_strategy(payload) -> StrategyModel:
    """Validate a raw strategy payload, raising InputError instead of ValidationError."""
    if isinstance(payload, StrategyModel):
        return payload
    try:
        return StrategyModel.model_validate(payload)
    except ValidationError as e:
        raise InputError(f"Invalid strategy: {e.errors(include_url=False)}") from e
