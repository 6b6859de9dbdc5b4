"""
Market Condition Classifier
===========================
Classifies volatility (ATR expansion/contraction) and trend direction
(ADX + DI + moving average, with optional higher-timeframe confirmation).

Pure functions of the indicator snapshot: re-evaluated on every new bar.
"""

from dataclasses import dataclass
from enum import Enum

from loguru import logger

from .indicators import IndicatorSnapshot


HIGH_VOLATILITY_RATIO = 1.5
LOW_VOLATILITY_RATIO = 0.7


class VolatilityRegime(Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class TrendRegime(Enum):
    UP = "up"
    DOWN = "down"
    RANGE = "range"


@dataclass
class MarketCondition:
    """Result of a classification pass."""
    trend: TrendRegime
    volatility: VolatilityRegime
    atr: float
    price: float

    def __str__(self) -> str:
        return f"{self.trend.value}/{self.volatility.value}"


class MarketConditionClassifier:
    """Trend and volatility classifier driven by the current ADX threshold."""

    def __init__(self, use_mtf: bool = False):
        self.use_mtf = use_mtf

    @staticmethod
    def classify_volatility(atr: float, atr_prev: float) -> VolatilityRegime:
        """ATR / previous ATR: > 1.5 high, < 0.7 low, else normal."""
        if atr_prev <= 0:
            return VolatilityRegime.NORMAL

        ratio = atr / atr_prev
        if ratio > HIGH_VOLATILITY_RATIO:
            return VolatilityRegime.HIGH
        if ratio < LOW_VOLATILITY_RATIO:
            return VolatilityRegime.LOW
        return VolatilityRegime.NORMAL

    def classify_trend(
        self,
        snapshot: IndicatorSnapshot,
        price: float,
        adx_threshold: float,
    ) -> TrendRegime:
        """
        Up: ADX above threshold, +DI > -DI, price above MA (and above HTF MA).
        Down: the mirror. Anything else, including conflicts, is range.
        """
        if snapshot.adx <= adx_threshold:
            return TrendRegime.RANGE

        htf_ma = snapshot.htf_ma
        if self.use_mtf and htf_ma is None:
            logger.debug("HTF MA unavailable, trend not confirmed")
            return TrendRegime.RANGE

        if snapshot.plus_di > snapshot.minus_di and price > snapshot.ma:
            if not self.use_mtf or price > htf_ma:
                return TrendRegime.UP

        if snapshot.minus_di > snapshot.plus_di and price < snapshot.ma:
            if not self.use_mtf or price < htf_ma:
                return TrendRegime.DOWN

        return TrendRegime.RANGE

    def classify(
        self,
        snapshot: IndicatorSnapshot,
        price: float,
        adx_threshold: float,
        atr: float = None,
    ) -> MarketCondition:
        """
        Classify the current market.

        Args:
            snapshot: Indicator values
            price: Current price
            adx_threshold: Current (possibly tightened) ADX threshold
            atr: Effective ATR if the caller substituted a fallback value
        """
        atr = snapshot.atr if atr is None else atr
        return MarketCondition(
            trend=self.classify_trend(snapshot, price, adx_threshold),
            volatility=self.classify_volatility(atr, snapshot.atr_prev),
            atr=atr,
            price=price,
        )
