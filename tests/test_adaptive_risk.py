"""
Unit Tests for Adaptive Risk Controller
=======================================
Risk tiers, threshold tightening, loss pause, hard reset and persistence.

Run with: pytest tests/test_adaptive_risk.py -v
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import json

import pytest

from trapbot.adaptive_risk import (
    AdaptiveRiskController,
    AdaptiveState,
    TIER_MINIMUM,
    TIER_NORMAL,
    TIER_REDUCED,
)
from trapbot.config import AdaptiveConfig, IndicatorConfig, PauseConfig


def make_controller(base=1.0, indicators=None, adaptive=None, pause=None, state=None):
    return AdaptiveRiskController(
        base_risk_percent=base,
        indicators=indicators or IndicatorConfig(),
        adaptive=adaptive or AdaptiveConfig(),
        pause=pause or PauseConfig(),
        state=state,
    )


def lose(controller, n):
    for _ in range(n):
        controller.record_trade_result(-10.0)


class TestRiskTiers:

    def test_full_risk_without_losses(self):
        controller = make_controller()
        assert controller.compute_risk(0) == (pytest.approx(1.0), TIER_NORMAL)

    def test_half_risk_at_adaptive_trigger(self):
        controller = make_controller()
        risk, tier = controller.compute_risk(3)
        assert risk == pytest.approx(0.5)
        assert tier == TIER_REDUCED

    def test_quarter_risk_at_pause_trigger(self):
        controller = make_controller()
        risk, tier = controller.compute_risk(5)
        assert risk == pytest.approx(0.25)
        assert tier == TIER_MINIMUM

    def test_no_quarter_tier_when_pause_trigger_not_above_adaptive(self):
        controller = make_controller(pause=PauseConfig(trigger_losses=3))
        risk, tier = controller.compute_risk(6)
        assert risk == pytest.approx(0.5)
        assert tier == TIER_REDUCED

    def test_floor(self):
        controller = make_controller(base=0.2)
        risk, _ = controller.compute_risk(5)
        assert risk == pytest.approx(0.1)

    def test_disabled_uses_base(self):
        controller = make_controller(adaptive=AdaptiveConfig(enabled=False))
        risk, tier = controller.compute_risk(7)
        assert risk == pytest.approx(1.0)
        assert tier == TIER_NORMAL


class TestThresholds:

    def test_base_thresholds_below_trigger(self):
        controller = make_controller()
        assert controller.compute_thresholds(2) == (25.0, 30.0, 70.0)

    def test_tightened_thresholds(self):
        controller = make_controller()
        adx, oversold, overbought = controller.compute_thresholds(3)
        assert adx == pytest.approx(30.0)
        assert oversold == pytest.approx(35.0)
        assert overbought == pytest.approx(65.0)

    def test_rsi_capped_at_midpoint(self):
        controller = make_controller(
            indicators=IndicatorConfig(rsi_oversold=30, rsi_overbought=60),
            adaptive=AdaptiveConfig(rsi_tighten=15),
        )
        _, oversold, overbought = controller.compute_thresholds(3)
        assert oversold == pytest.approx(45.0)
        assert overbought == pytest.approx(50.0)

    def test_inconsistent_tightening_reverts_to_base(self):
        controller = make_controller(
            indicators=IndicatorConfig(rsi_oversold=45, rsi_overbought=55),
            adaptive=AdaptiveConfig(rsi_tighten=10),
        )
        _, oversold, overbought = controller.compute_thresholds(4)
        assert oversold == pytest.approx(45.0)
        assert overbought == pytest.approx(55.0)

    def test_individual_switches(self):
        controller = make_controller(adaptive=AdaptiveConfig(adx_enabled=False))
        adx, oversold, _ = controller.compute_thresholds(3)
        assert adx == pytest.approx(25.0)
        assert oversold == pytest.approx(35.0)

    def test_state_follows_losses(self):
        controller = make_controller()
        lose(controller, 3)
        assert controller.state.current_risk_percent == pytest.approx(0.5)
        assert controller.state.current_adx_threshold == pytest.approx(30.0)
        assert controller.state.tier == TIER_REDUCED


class TestStreakCounters:

    def test_win_clears_losses(self):
        controller = make_controller()
        lose(controller, 4)
        controller.record_trade_result(25.0)
        assert controller.state.consecutive_losses == 0
        assert controller.state.consecutive_wins == 1

    def test_loss_clears_wins(self):
        controller = make_controller()
        controller.record_trade_result(5.0)
        controller.record_trade_result(5.0)
        controller.record_trade_result(-5.0)
        assert controller.state.consecutive_wins == 0
        assert controller.state.consecutive_losses == 1

    def test_breakeven_changes_nothing(self):
        controller = make_controller()
        lose(controller, 2)
        controller.record_trade_result(0.0)
        assert controller.state.consecutive_losses == 2
        assert controller.state.consecutive_wins == 0

    def test_counters_never_both_positive(self):
        controller = make_controller()
        for profit in [5, -3, -2, 8, 1, -1, 0, 4, -6]:
            controller.record_trade_result(profit)
            s = controller.state
            assert not (s.consecutive_losses > 0 and s.consecutive_wins > 0)


class TestPauseStateMachine:

    def test_pause_after_trigger(self):
        controller = make_controller()
        lose(controller, 5)
        allowed, reason = controller.check_entry_allowed()
        assert allowed is False
        assert "Paused" in reason
        assert controller.state.paused is True
        assert controller.state.pause_bars_elapsed == 1

    def test_auto_reset_after_bars(self):
        controller = make_controller(pause=PauseConfig(trigger_losses=5, auto_reset_bars=3))
        lose(controller, 5)

        assert controller.check_entry_allowed()[0] is False
        assert controller.check_entry_allowed()[0] is False
        allowed, _ = controller.check_entry_allowed()

        assert allowed is True
        assert controller.state.paused is False
        assert controller.state.consecutive_losses == 0
        assert controller.state.current_risk_percent == pytest.approx(1.0)

    def test_zero_reset_bars_never_expires(self):
        controller = make_controller(pause=PauseConfig(trigger_losses=5, auto_reset_bars=0))
        lose(controller, 5)
        for _ in range(50):
            assert controller.check_entry_allowed()[0] is False
        assert controller.state.consecutive_losses == 5

    def test_win_ends_pause(self):
        controller = make_controller()
        lose(controller, 5)
        controller.check_entry_allowed()
        controller.record_trade_result(12.0)
        assert controller.state.paused is False
        assert controller.check_entry_allowed()[0] is True

    def test_pause_disabled(self):
        controller = make_controller(pause=PauseConfig(enabled=False))
        lose(controller, 7)
        assert controller.check_entry_allowed()[0] is True
        assert controller.state.consecutive_losses == 7

    def test_hard_reset_at_ten_losses(self):
        controller = make_controller(pause=PauseConfig(enabled=False))
        lose(controller, 10)
        allowed, _ = controller.check_entry_allowed()
        assert allowed is True
        assert controller.state.consecutive_losses == 0

    def test_hard_reset_ignores_pause_configuration(self):
        controller = make_controller(pause=PauseConfig(trigger_losses=5, auto_reset_bars=0))
        lose(controller, 10)
        allowed, _ = controller.check_entry_allowed()
        assert allowed is True
        assert controller.state.paused is False


class TestPersistence:

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "state.json")
        controller = make_controller()
        lose(controller, 5)
        controller.check_entry_allowed()
        controller.save_state(path)

        restored = make_controller()
        assert restored.load_state(path) is True
        assert restored.state.consecutive_losses == 5
        assert restored.state.paused is True
        assert restored.state.pause_bars_elapsed == 1
        assert restored.state.current_risk_percent == pytest.approx(0.25)

    def test_missing_file(self, tmp_path):
        controller = make_controller()
        assert controller.load_state(str(tmp_path / "nope.json")) is False

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        controller = make_controller()
        assert controller.load_state(str(path)) is False
        assert controller.state.consecutive_losses == 0

    def test_conflicting_counters_keep_losses(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"consecutive_losses": 2, "consecutive_wins": 3}))
        controller = make_controller()
        controller.load_state(str(path))
        assert controller.state.consecutive_losses == 2
        assert controller.state.consecutive_wins == 0

    def test_explicit_state_object(self):
        state = AdaptiveState(consecutive_losses=3)
        controller = make_controller(state=state)
        assert controller.state is state
        assert state.current_risk_percent == pytest.approx(0.5)

    def test_summary(self):
        controller = make_controller()
        lose(controller, 3)
        summary = controller.get_summary()
        assert summary["consecutive_losses"] == 3
        assert summary["tier"] == TIER_REDUCED
        assert summary["risk_percent"] == pytest.approx(0.5)
