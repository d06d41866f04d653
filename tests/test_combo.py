"""
tests/test_combo.py
Tests for the combo / multiplier state machine.
"""

import pytest
from pydantic import ValidationError

from app.services.combo import (
    DEFAULT_COMBO_CONFIG,
    ComboConfig,
    ComboState,
    combo_multiplier,
    next_combo_state,
)
from core.constants import BASE_MULTIPLIER, MAX_COMBO_COUNT, MAX_MULTIPLIER
from database.models import BetResult


class TestComboMultiplier:
    def test_base_at_zero(self):
        assert combo_multiplier(0) == pytest.approx(1.0)

    def test_linear_growth(self):
        """Each combo step adds the increment (0.1 by default)."""
        assert combo_multiplier(4) == pytest.approx(1.4)

    def test_capped_at_max(self):
        assert combo_multiplier(50) == pytest.approx(MAX_MULTIPLIER)

    def test_custom_config(self):
        config = ComboConfig(multiplier_increment=0.25, max_multiplier=2.0)
        assert combo_multiplier(2, config) == pytest.approx(1.5)
        assert combo_multiplier(10, config) == pytest.approx(2.0)


class TestNextComboState:
    def test_win_from_zero(self):
        """First win: combo 0 -> 1, multiplier 1.1, max_combo tracks it."""
        state = next_combo_state(BetResult.WIN, combo=0, max_combo=0, multiplier=1.0)
        assert state == ComboState(combo=1, max_combo=1, multiplier=pytest.approx(1.1))

    def test_win_keeps_higher_record(self):
        state = next_combo_state(BetResult.WIN, combo=3, max_combo=7, multiplier=1.3)
        assert state.combo == 4
        assert state.max_combo == 7
        assert state.multiplier == pytest.approx(1.4)

    def test_win_at_cap_stays_at_cap(self):
        state = next_combo_state(
            BetResult.WIN, combo=MAX_COMBO_COUNT, max_combo=MAX_COMBO_COUNT, multiplier=3.0
        )
        assert state.combo == MAX_COMBO_COUNT
        assert state.multiplier == pytest.approx(MAX_MULTIPLIER)

    def test_lose_resets_but_keeps_record(self):
        state = next_combo_state(BetResult.LOSE, combo=3, max_combo=5, multiplier=1.3)
        assert state == ComboState(combo=0, max_combo=5, multiplier=1.0)

    @pytest.mark.parametrize("result", [
        BetResult.BREAKEVEN, BetResult.DRAW, BetResult.REFUND, "push", "",
    ])
    def test_other_results_leave_state_unchanged(self, result):
        state = next_combo_state(result, combo=2, max_combo=4, multiplier=1.2)
        assert state == ComboState(combo=2, max_combo=4, multiplier=1.2)

    def test_result_strings_are_case_insensitive(self):
        state = next_combo_state("WIN", combo=0, max_combo=0, multiplier=1.0)
        assert state.combo == 1

    def test_custom_reset_values(self):
        config = ComboConfig(reset_combo=1, reset_multiplier=1.05)
        state = next_combo_state(BetResult.LOSE, combo=6, max_combo=6, multiplier=1.6, config=config)
        assert state.combo == 1
        assert state.multiplier == pytest.approx(1.05)

    def test_bounds_hold_over_any_sequence(self):
        """combo stays in [0, max] and multiplier in [base, max] for mixed runs."""
        results = (
            [BetResult.WIN] * 25
            + [BetResult.BREAKEVEN, BetResult.LOSE]
            + [BetResult.WIN, BetResult.LOSE] * 5
            + [BetResult.WIN] * 12
            + [BetResult.REFUND, BetResult.DRAW]
        )
        state = ComboState(combo=0, max_combo=0, multiplier=1.0)
        for result in results:
            state = next_combo_state(
                result, state.combo, state.max_combo, state.multiplier, DEFAULT_COMBO_CONFIG
            )
            assert 0 <= state.combo <= MAX_COMBO_COUNT
            assert BASE_MULTIPLIER <= state.multiplier <= MAX_MULTIPLIER
            assert state.max_combo >= state.combo

        assert state.max_combo == MAX_COMBO_COUNT
        assert state.combo == 12


class TestComboConfig:
    def test_defaults(self):
        assert DEFAULT_COMBO_CONFIG.multiplier_increment == pytest.approx(0.1)
        assert DEFAULT_COMBO_CONFIG.base_multiplier == pytest.approx(1.0)
        assert DEFAULT_COMBO_CONFIG.max_multiplier == pytest.approx(3.0)
        assert DEFAULT_COMBO_CONFIG.max_combo_count == 20

    def test_frozen(self):
        with pytest.raises(ValidationError):
            DEFAULT_COMBO_CONFIG.max_combo_count = 5

    @pytest.mark.parametrize("fields", [
        {"base_multiplier": 3.5, "max_multiplier": 3.0},
        {"max_multiplier": 2.0, "reset_multiplier": 2.5},
        {"base_multiplier": 1.2, "reset_multiplier": 1.0},
        {"max_combo_count": 3, "reset_combo": 5},
    ])
    def test_inconsistent_bounds_rejected(self, fields):
        with pytest.raises(ValidationError):
            ComboConfig(**fields)

    def test_tight_bounds_accepted(self):
        config = ComboConfig(
            base_multiplier=2.0, max_multiplier=2.0, reset_multiplier=2.0,
            max_combo_count=3, reset_combo=3,
        )
        state = next_combo_state(BetResult.LOSE, 2, 2, 2.0, config)
        assert state.combo == 3
        assert state.multiplier == pytest.approx(2.0)

    def test_unknown_keys_ignored(self):
        config = ComboConfig.model_validate({"MAX_COMBO_COUNT": 99, "max_combo_count": 10})
        assert config.max_combo_count == 10
