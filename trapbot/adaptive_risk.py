"""
Adaptive Risk Controller
========================
Consecutive-loss driven control loop.

- Risk tiers: 100% / 50% / 25% of base risk as losses accumulate
- Threshold tightening: higher ADX bar, RSI bands pulled toward 50
- Loss pause: block entries after a losing streak, auto-resume after N bars
- Hard reset: the loss counter is cleared once it reaches 10

The AdaptiveState object is the explicit context threaded through each
processing cycle. It is persisted to disk so a restart keeps the streak.
"""

import json
import os
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Tuple

from loguru import logger

from .config import AdaptiveConfig, IndicatorConfig, PauseConfig


HARD_RESET_LOSSES = 10
MIN_RISK_PERCENT = 0.1
RSI_MIDPOINT = 50.0

TIER_NORMAL = 0
TIER_REDUCED = 1        # 50% of base risk
TIER_MINIMUM = 2        # 25% of base risk


@dataclass
class AdaptiveState:
    """Process-wide adaptive state (single writer: controller + lifecycle manager)."""
    consecutive_losses: int = 0
    consecutive_wins: int = 0
    paused: bool = False
    pause_bars_elapsed: int = 0

    # Derived each cycle
    current_risk_percent: float = 0.0
    current_adx_threshold: float = 0.0
    current_rsi_oversold: float = 0.0
    current_rsi_overbought: float = 0.0
    tier: int = TIER_NORMAL


class AdaptiveRiskController:
    """
    Derives the current risk percentage and indicator thresholds from the
    loss streak, and owns the Active/Paused state machine.
    """

    def __init__(
        self,
        base_risk_percent: float,
        indicators: IndicatorConfig,
        adaptive: AdaptiveConfig,
        pause: PauseConfig,
        state: AdaptiveState = None,
    ):
        self.base_risk_percent = base_risk_percent
        self.indicators = indicators
        self.adaptive = adaptive
        self.pause = pause
        self.state = state or AdaptiveState()
        self.refresh()

    # === Derivations ===

    def compute_risk(self, losses: int) -> Tuple[float, int]:
        """Risk percentage and tier for a given loss count."""
        if not self.adaptive.enabled:
            return max(self.base_risk_percent, MIN_RISK_PERCENT), TIER_NORMAL

        pause_level = self.pause.trigger_losses
        adaptive_level = self.adaptive.trigger_losses

        if pause_level > adaptive_level and losses >= pause_level:
            risk, tier = self.base_risk_percent * 0.25, TIER_MINIMUM
        elif losses >= adaptive_level:
            risk, tier = self.base_risk_percent * 0.5, TIER_REDUCED
        else:
            risk, tier = self.base_risk_percent, TIER_NORMAL

        return max(risk, MIN_RISK_PERCENT), tier

    def compute_thresholds(self, losses: int) -> Tuple[float, float, float]:
        """(adx_threshold, rsi_oversold, rsi_overbought) for a given loss count."""
        adx = self.indicators.adx_threshold
        oversold = self.indicators.rsi_oversold
        overbought = self.indicators.rsi_overbought

        if losses < self.adaptive.trigger_losses:
            return adx, oversold, overbought

        if self.adaptive.adx_enabled:
            adx += self.adaptive.adx_increment

        if self.adaptive.rsi_enabled:
            tight_oversold = min(oversold + self.adaptive.rsi_tighten, RSI_MIDPOINT)
            tight_overbought = max(overbought - self.adaptive.rsi_tighten, RSI_MIDPOINT)
            if tight_oversold >= tight_overbought:
                logger.warning(
                    f"RSI tightening inconsistent (oversold {tight_oversold} >= "
                    f"overbought {tight_overbought}), using base thresholds"
                )
            else:
                oversold, overbought = tight_oversold, tight_overbought

        return adx, oversold, overbought

    def refresh(self) -> AdaptiveState:
        """Recompute the derived parameters from the current loss count."""
        s = self.state
        s.current_risk_percent, s.tier = self.compute_risk(s.consecutive_losses)
        (
            s.current_adx_threshold,
            s.current_rsi_oversold,
            s.current_rsi_overbought,
        ) = self.compute_thresholds(s.consecutive_losses)
        return s

    # === Pause state machine ===

    def check_entry_allowed(self) -> Tuple[bool, str]:
        """
        Run one entry-check cycle of the pause state machine.

        Returns:
            (allowed, reason)
        """
        s = self.state

        if s.consecutive_losses >= HARD_RESET_LOSSES:
            logger.warning(f"Hard reset: {s.consecutive_losses} consecutive losses, counter cleared")
            self._reset_losses()

        if self.pause.enabled and not s.paused and s.consecutive_losses >= self.pause.trigger_losses:
            s.paused = True
            s.pause_bars_elapsed = 0
            logger.warning(f"Trading PAUSED after {s.consecutive_losses} consecutive losses")

        if s.paused:
            s.pause_bars_elapsed += 1
            limit = self.pause.auto_reset_bars
            if limit > 0 and s.pause_bars_elapsed >= limit:
                logger.info(f"Pause expired after {s.pause_bars_elapsed} bars, loss counter reset")
                self._reset_losses()
            else:
                remaining = f"{limit - s.pause_bars_elapsed} bars left" if limit > 0 else "no auto-reset"
                self.refresh()
                return False, f"Paused ({s.consecutive_losses} losses, {remaining})"

        self.refresh()
        return True, "OK"

    def _reset_losses(self):
        s = self.state
        s.consecutive_losses = 0
        s.paused = False
        s.pause_bars_elapsed = 0
        self.refresh()

    # === Outcome feedback ===

    def record_trade_result(self, profit: float) -> AdaptiveState:
        """Update streak counters from a closed trade. Breakeven changes nothing."""
        s = self.state

        if profit > 0:
            s.consecutive_wins += 1
            if s.consecutive_losses or s.paused:
                logger.info(f"Win after {s.consecutive_losses} losses, adaptive state cleared")
            s.consecutive_losses = 0
            s.paused = False
            s.pause_bars_elapsed = 0
        elif profit < 0:
            s.consecutive_losses += 1
            s.consecutive_wins = 0
            logger.info(f"Loss recorded, consecutive losses: {s.consecutive_losses}")

        return self.refresh()

    def record_entry(self) -> AdaptiveState:
        """A filled entry starts a new win streak; losses are left alone."""
        self.state.consecutive_wins = 0
        return self.state

    # === Persistence ===

    def save_state(self, path: str):
        """Atomic write of the streak counters (crash-safe)."""
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        payload = asdict(self.state)
        payload["saved_at"] = datetime.now(timezone.utc).isoformat()
        temp_path = f"{path}.tmp"

        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except OSError as e:
            logger.warning(f"Could not save adaptive state: {e}")

    def load_state(self, path: str) -> bool:
        """Restore the streak counters. Returns False if nothing usable was found."""
        if not os.path.exists(path):
            return False

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load adaptive state: {e}")
            return False

        s = self.state
        s.consecutive_losses = int(data.get("consecutive_losses", 0))
        s.consecutive_wins = int(data.get("consecutive_wins", 0))
        if s.consecutive_losses and s.consecutive_wins:
            # Counters are mutually exclusive; trust the losses
            s.consecutive_wins = 0
        s.paused = bool(data.get("paused", False))
        s.pause_bars_elapsed = int(data.get("pause_bars_elapsed", 0))
        self.refresh()

        logger.info(
            f"Loaded adaptive state: losses={s.consecutive_losses}, wins={s.consecutive_wins}, "
            f"paused={s.paused}"
        )
        return True

    def get_summary(self) -> dict:
        s = self.state
        return {
            "consecutive_losses": s.consecutive_losses,
            "consecutive_wins": s.consecutive_wins,
            "paused": s.paused,
            "pause_bars_elapsed": s.pause_bars_elapsed,
            "risk_percent": round(s.current_risk_percent, 4),
            "adx_threshold": s.current_adx_threshold,
            "rsi_oversold": s.current_rsi_oversold,
            "rsi_overbought": s.current_rsi_overbought,
            "tier": s.tier,
        }
