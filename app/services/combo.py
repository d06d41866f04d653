"""
app/services/combo.py
Combo / multiplier state machine.

Consecutive wins grow the combo counter, and the combo drives a payout
multiplier that applies to winning settlements only:

  WIN        combo + 1 (capped), max_combo tracks the record,
             multiplier = base + combo * increment (capped)
  LOSE       combo and multiplier reset, max_combo kept
  otherwise  unchanged (breakeven, draw, refund, unknown)

Pure and side-effect free. Tuning arrives as an explicit ComboConfig value.
"""

from dataclasses import dataclass

from pydantic import BaseModel, Field, model_validator

from core.constants import (
    BASE_MULTIPLIER,
    MAX_COMBO_COUNT,
    MAX_MULTIPLIER,
    MULTIPLIER_INCREMENT,
    RESET_COMBO,
    RESET_MULTIPLIER,
)
from database.models import BetResult


class ComboConfig(BaseModel):
    """Immutable combo tuning. Unset fields take the compiled-in defaults."""

    multiplier_increment: float = Field(default=MULTIPLIER_INCREMENT, ge=0)
    base_multiplier: float = Field(default=BASE_MULTIPLIER, gt=0)
    max_multiplier: float = Field(default=MAX_MULTIPLIER, gt=0)
    max_combo_count: int = Field(default=MAX_COMBO_COUNT, ge=0)
    reset_combo: int = Field(default=RESET_COMBO, ge=0)
    reset_multiplier: float = Field(default=RESET_MULTIPLIER, gt=0)

    model_config = {"frozen": True, "extra": "ignore"}

    @model_validator(mode="after")
    def _check_bounds(self) -> "ComboConfig":
        # Keeps every reachable state inside base..max and 0..max_combo_count
        if self.base_multiplier > self.max_multiplier:
            raise ValueError("base_multiplier must not exceed max_multiplier")
        if not self.base_multiplier <= self.reset_multiplier <= self.max_multiplier:
            raise ValueError("reset_multiplier must lie between base_multiplier and max_multiplier")
        if self.reset_combo > self.max_combo_count:
            raise ValueError("reset_combo must not exceed max_combo_count")
        return self


DEFAULT_COMBO_CONFIG = ComboConfig()


@dataclass(frozen=True)
class ComboState:
    combo: int
    max_combo: int
    multiplier: float


def combo_multiplier(combo: int, config: ComboConfig = DEFAULT_COMBO_CONFIG) -> float:
    """Multiplier earned by a combo count, capped at max_multiplier."""
    raw = config.base_multiplier + combo * config.multiplier_increment
    return round(min(raw, config.max_multiplier), 6)


def _coerce_result(result: BetResult | str) -> BetResult | None:
    if isinstance(result, BetResult):
        return result
    try:
        return BetResult(str(result).lower())
    except ValueError:
        return None


def next_combo_state(
    result: BetResult | str,
    combo: int,
    max_combo: int,
    multiplier: float,
    config: ComboConfig = DEFAULT_COMBO_CONFIG,
) -> ComboState:
    """Combo state after a settlement with the given result."""
    outcome = _coerce_result(result)

    if outcome == BetResult.WIN:
        new_combo = min(combo + 1, config.max_combo_count)
        return ComboState(
            combo=new_combo,
            max_combo=max(max_combo, new_combo),
            multiplier=combo_multiplier(new_combo, config),
        )

    if outcome == BetResult.LOSE:
        return ComboState(
            combo=config.reset_combo,
            max_combo=max_combo,
            multiplier=config.reset_multiplier,
        )

    return ComboState(combo=combo, max_combo=max_combo, multiplier=multiplier)
