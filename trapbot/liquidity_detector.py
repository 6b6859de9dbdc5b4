"""
Liquidity Trap Detection - Polars
=================================
Liquidity zones and trap candles.

Implements:
- Swing High/Low zones (strict 2-bar fractals) with extreme fallback
- Volume profile (price buckets, peak and trough nodes)
- Zone refinement toward volume nodes
- Trap candles: wick through a zone, close back inside
- False breakouts (diagnostic)
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
import polars as pl
from loguru import logger

from .mt5_connector import PositionSide
from .regime_detector import TrendRegime


VOLUME_NODE_ATR_DISTANCE = 1.5     # Max zone-to-node distance for blending
ZONE_BLEND_WEIGHT = 0.7            # Weight kept on the raw zone
FALSE_BREAKOUT_MIN_PIERCE_ATR = 0.1
FALSE_BREAKOUT_WICK_RATIO = 1.5


@dataclass
class LiquidityZones:
    """Swing high (sell-side trap level) and swing low (buy-side trap level)."""
    high: float
    low: float
    high_is_swing: bool = True
    low_is_swing: bool = True


@dataclass
class VolumeProfile:
    """Centres of the busiest and the quietest non-empty price buckets."""
    peak_price: float
    trough_price: float
    bucket_height: float


@dataclass
class CandleShape:
    """Wick/body geometry of one bar."""
    open: float
    high: float
    low: float
    close: float

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def upper_wick(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_wick(self) -> float:
        return min(self.open, self.close) - self.low


@dataclass
class TrapSignal:
    """A trap setup on the last closed bar."""
    side: PositionSide
    zone_level: float
    candle: CandleShape
    avg_bar_size: float
    reason: str


@dataclass
class FalseBreakout:
    """A zone pierced and rejected on the same bar."""
    side: PositionSide      # Direction a trade would take (fade the breakout)
    zone_level: float
    pierce: float


class LiquidityTrapDetector:
    """
    Liquidity zone and trap candle detector.

    Bar frames are expected oldest first with columns
    time/open/high/low/close/volume and must contain only closed bars.
    """

    def __init__(
        self,
        lookback_bars: int = 20,
        wick_ratio: float = 1.5,
        body_ratio: float = 0.3,
        use_volume_profile: bool = True,
        profile_buckets: int = 24,
        allow_range_trades: bool = True,
    ):
        self.lookback_bars = lookback_bars
        self.wick_ratio = wick_ratio
        self.body_ratio = body_ratio
        self.use_volume_profile = use_volume_profile
        self.profile_buckets = profile_buckets
        self.allow_range_trades = allow_range_trades

    # === Zones ===

    def find_liquidity_zones(self, window: pl.DataFrame) -> Optional[LiquidityZones]:
        """
        Locate the most recent strict swing high and swing low in the window.

        A swing high is a bar whose high is strictly above the highs of the
        two bars on each side; swing lows mirror it. Without a qualifying
        bar the absolute extreme of the window is used.

        Returns:
            LiquidityZones, or None if the window is too short or degenerate
        """
        if len(window) < 5:
            return None

        df = window.select(["high", "low"]).with_columns([
            (
                (pl.col("high") > pl.col("high").shift(1))
                & (pl.col("high") > pl.col("high").shift(2))
                & (pl.col("high") > pl.col("high").shift(-1))
                & (pl.col("high") > pl.col("high").shift(-2))
            ).fill_null(False).alias("is_swing_high"),
            (
                (pl.col("low") < pl.col("low").shift(1))
                & (pl.col("low") < pl.col("low").shift(2))
                & (pl.col("low") < pl.col("low").shift(-1))
                & (pl.col("low") < pl.col("low").shift(-2))
            ).fill_null(False).alias("is_swing_low"),
        ])

        swing_highs = df.filter(pl.col("is_swing_high"))["high"]
        swing_lows = df.filter(pl.col("is_swing_low"))["low"]

        high_is_swing = len(swing_highs) > 0
        low_is_swing = len(swing_lows) > 0
        zone_high = swing_highs.tail(1).item() if high_is_swing else df["high"].max()
        zone_low = swing_lows.tail(1).item() if low_is_swing else df["low"].min()

        if zone_low >= zone_high:
            logger.debug(f"Degenerate zones rejected: low {zone_low} >= high {zone_high}")
            return None

        return LiquidityZones(
            high=zone_high,
            low=zone_low,
            high_is_swing=high_is_swing,
            low_is_swing=low_is_swing,
        )

    def calculate_volume_profile(self, bars: pl.DataFrame) -> Optional[VolumeProfile]:
        """
        Spread each bar's volume evenly over the price buckets its range touches.

        Returns:
            VolumeProfile, or None on an empty window, flat range or no volume
        """
        if len(bars) == 0:
            return None

        highs = bars["high"].to_numpy()
        lows = bars["low"].to_numpy()
        volumes = bars["volume"].to_numpy().astype(float)

        price_min = float(lows.min())
        price_max = float(highs.max())
        price_range = price_max - price_min
        if price_range <= 0:
            return None

        n = self.profile_buckets
        height = price_range / n
        buckets = np.zeros(n)

        lo_idx = np.clip(np.floor((lows - price_min) / height).astype(int), 0, n - 1)
        hi_idx = np.clip(np.floor((highs - price_min) / height).astype(int), 0, n - 1)

        for lo, hi, vol in zip(lo_idx, hi_idx, volumes):
            if vol <= 0:
                continue
            buckets[lo:hi + 1] += vol / (hi - lo + 1)

        if buckets.max() <= 0:
            return None

        peak = int(buckets.argmax())
        nonzero = np.where(buckets > 0)[0]
        trough = int(nonzero[buckets[nonzero].argmin()])

        return VolumeProfile(
            peak_price=price_min + (peak + 0.5) * height,
            trough_price=price_min + (trough + 0.5) * height,
            bucket_height=height,
        )

    def refine_zones(
        self,
        zones: LiquidityZones,
        profile: Optional[VolumeProfile],
        atr: float,
    ) -> LiquidityZones:
        """Pull each zone 30% toward a nearby volume node (peak first, then trough)."""
        if profile is None or atr <= 0:
            return zones

        max_distance = VOLUME_NODE_ATR_DISTANCE * atr

        def blend(level: float) -> float:
            for node in (profile.peak_price, profile.trough_price):
                if abs(node - level) <= max_distance:
                    return ZONE_BLEND_WEIGHT * level + (1 - ZONE_BLEND_WEIGHT) * node
            return level

        refined = LiquidityZones(
            high=blend(zones.high),
            low=blend(zones.low),
            high_is_swing=zones.high_is_swing,
            low_is_swing=zones.low_is_swing,
        )
        if refined.low >= refined.high:
            return zones
        return refined

    def build_zones(
        self,
        bars: pl.DataFrame,
        atr: float,
        profile_bars: Optional[pl.DataFrame] = None,
    ) -> Optional[LiquidityZones]:
        """
        Zones from the lookback window that precedes the last closed bar,
        refined with the volume profile when enabled.
        """
        if len(bars) < self.lookback_bars + 1:
            return None

        window = bars.slice(len(bars) - self.lookback_bars - 1, self.lookback_bars)
        zones = self.find_liquidity_zones(window)
        if zones is None:
            return None

        if self.use_volume_profile and profile_bars is not None:
            zones = self.refine_zones(zones, self.calculate_volume_profile(profile_bars), atr)

        logger.debug(f"Liquidity zones: high={zones.high:.5f} low={zones.low:.5f}")
        return zones

    # === Patterns ===

    def average_bar_size(self, bars: pl.DataFrame, atr: float) -> float:
        """Mean high-low range over the lookback window; ATR if degenerate."""
        window = bars.tail(self.lookback_bars)
        avg = (window["high"] - window["low"]).mean() if len(window) else None
        if avg is None or not math.isfinite(avg) or avg <= 0:
            return atr
        return float(avg)

    def detect_trap(
        self,
        bars: pl.DataFrame,
        zones: LiquidityZones,
        trend: TrendRegime,
        rsi: float,
        rsi_oversold: float,
        rsi_overbought: float,
        atr: float,
    ) -> Optional[TrapSignal]:
        """
        Check the last closed bar for a trap setup.

        Short is evaluated first and wins if both directions qualify; the
        priority is an arbitrary tie-break.
        """
        if len(bars) == 0:
            return None

        last = bars.row(len(bars) - 1, named=True)
        candle = CandleShape(open=last["open"], high=last["high"], low=last["low"], close=last["close"])
        avg_bar = self.average_bar_size(bars, atr)
        if avg_bar <= 0:
            return None

        body_ok = candle.body > self.body_ratio * avg_bar
        in_range = trend is TrendRegime.RANGE

        short_regime = trend is TrendRegime.DOWN or (in_range and self.allow_range_trades)
        if (
            candle.high > zones.high
            and candle.close < zones.high
            and candle.upper_wick > self.wick_ratio * candle.body
            and body_ok
            and short_regime
            and not (in_range and rsi < rsi_oversold)
        ):
            return TrapSignal(
                side=PositionSide.SHORT,
                zone_level=zones.high,
                candle=candle,
                avg_bar_size=avg_bar,
                reason=f"Bearish trap above {zones.high:.5f} ({trend.value})",
            )

        long_regime = trend is TrendRegime.UP or (in_range and self.allow_range_trades)
        if (
            candle.low < zones.low
            and candle.close > zones.low
            and candle.lower_wick > self.wick_ratio * candle.body
            and body_ok
            and long_regime
            and not (in_range and rsi > rsi_overbought)
        ):
            return TrapSignal(
                side=PositionSide.LONG,
                zone_level=zones.low,
                candle=candle,
                avg_bar_size=avg_bar,
                reason=f"Bullish trap below {zones.low:.5f} ({trend.value})",
            )

        return None

    def detect_false_breakout(
        self,
        bars: pl.DataFrame,
        zones: LiquidityZones,
        atr: float,
    ) -> Optional[FalseBreakout]:
        """
        Bar pierces a zone by at least 0.1 ATR, closes back inside, and its
        rejection wick is at least 1.5x the body. Diagnostic only.
        """
        if len(bars) == 0 or atr <= 0:
            return None

        last = bars.row(len(bars) - 1, named=True)
        candle = CandleShape(open=last["open"], high=last["high"], low=last["low"], close=last["close"])
        min_pierce = FALSE_BREAKOUT_MIN_PIERCE_ATR * atr

        pierce_up = candle.high - zones.high
        if (
            pierce_up >= min_pierce
            and candle.close < zones.high
            and candle.upper_wick >= FALSE_BREAKOUT_WICK_RATIO * candle.body
        ):
            return FalseBreakout(side=PositionSide.SHORT, zone_level=zones.high, pierce=pierce_up)

        pierce_down = zones.low - candle.low
        if (
            pierce_down >= min_pierce
            and candle.close > zones.low
            and candle.lower_wick >= FALSE_BREAKOUT_WICK_RATIO * candle.body
        ):
            return FalseBreakout(side=PositionSide.LONG, zone_level=zones.low, pierce=pierce_down)

        return None
