"""
Risk Engine Module
==================
Risk-bounded position sizing.

Lot Size = Risk Amount / (SL distance * value of one price unit per lot)

- Risk amount = balance * risk%, capped at 50% of free margin
- Value per price unit from tick size/value, converted to account currency
- Volume snapped to the symbol's min/max/step constraints
"""

import math
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

from .mt5_connector import AccountInfo, SymbolInfo


MAX_MARGIN_FRACTION = 0.5
REFERENCE_CURRENCY = "USD"


@dataclass
class SizingResult:
    """Result of position size calculation."""
    approved: bool
    volume: float = 0.0
    raw_volume: float = 0.0
    risk_amount: float = 0.0
    stop_distance: float = 0.0
    rejection_reason: Optional[str] = None


PriceLookup = Callable[[str], Optional[float]]


def conversion_rate(from_ccy: str, to_ccy: str, price_of: PriceLookup) -> Optional[float]:
    """
    Rate that converts an amount in from_ccy into to_ccy.

    Tries the direct pair, then the inverse pair, then two hops through USD.
    Returns None when no route is quoted.
    """
    if from_ccy == to_ccy:
        return 1.0

    direct = price_of(f"{from_ccy}{to_ccy}")
    if direct is not None and direct > 0:
        return direct

    inverse = price_of(f"{to_ccy}{from_ccy}")
    if inverse is not None and inverse > 0:
        return 1.0 / inverse

    if REFERENCE_CURRENCY in (from_ccy, to_ccy):
        return None

    first = conversion_rate(from_ccy, REFERENCE_CURRENCY, price_of)
    second = conversion_rate(REFERENCE_CURRENCY, to_ccy, price_of)
    if first is None or second is None:
        return None
    return first * second


def snap_volume(volume: float, symbol: SymbolInfo) -> float:
    """Clamp to max, floor to step, then re-clamp to min."""
    volume = min(volume, symbol.volume_max)
    step = symbol.volume_step
    if step > 0:
        # Small epsilon keeps 1.9999999 from flooring a whole step down
        volume = math.floor(volume / step + 1e-9) * step
        decimals = max(0, -int(math.floor(math.log10(step)))) if step < 1 else 0
        volume = round(volume, decimals + 2)
    return max(volume, symbol.volume_min)


class PositionSizer:
    """Computes a risk-bounded order volume."""

    def __init__(self, price_of: PriceLookup):
        """
        Args:
            price_of: Returns the bid of a symbol (e.g. "EURUSD") or None
        """
        self.price_of = price_of

    def value_per_price_unit(self, symbol: SymbolInfo, account_currency: str) -> Optional[float]:
        """Account-currency value of a 1.0 price move for one lot."""
        if symbol.tick_size <= 0 or symbol.tick_value <= 0:
            return None

        value = symbol.tick_value / symbol.tick_size
        rate = conversion_rate(symbol.currency_profit, account_currency, self.price_of)
        if rate is None:
            return None
        return value * rate

    def calculate(
        self,
        entry_price: float,
        stop_price: float,
        account: AccountInfo,
        symbol: SymbolInfo,
        risk_percent: float,
    ) -> SizingResult:
        """
        Calculate order volume for a trade.

        Returns:
            SizingResult; approved=False means no trade
        """
        if account.balance <= 0:
            return self._reject(f"Non-positive balance: {account.balance}")

        risk_amount = account.balance * risk_percent / 100
        margin_cap = account.free_margin * MAX_MARGIN_FRACTION
        if risk_amount > margin_cap:
            logger.debug(f"Risk ${risk_amount:.2f} capped at 50% of free margin (${margin_cap:.2f})")
            risk_amount = margin_cap
        if risk_amount <= 0:
            return self._reject(f"Non-positive risk amount after margin cap: {risk_amount:.2f}")

        distance = abs(entry_price - stop_price)
        if distance <= symbol.point:
            return self._reject(f"Stop distance {distance} is within one point")

        if symbol.tick_size <= 0 or symbol.tick_value <= 0:
            return self._reject(
                f"Invalid tick economics: size={symbol.tick_size} value={symbol.tick_value}"
            )

        unit_value = self.value_per_price_unit(symbol, account.currency)
        if unit_value is None or unit_value <= 0:
            return self._reject(
                f"Cannot convert {symbol.currency_profit} to {account.currency}"
            )

        raw_volume = risk_amount / (distance * unit_value)
        volume = snap_volume(raw_volume, symbol)

        logger.debug(
            f"Sizing: risk=${risk_amount:.2f} dist={distance:.5f} "
            f"unit=${unit_value:.2f} raw={raw_volume:.4f} -> {volume}"
        )
        return SizingResult(
            approved=True,
            volume=volume,
            raw_volume=raw_volume,
            risk_amount=risk_amount,
            stop_distance=distance,
        )

    @staticmethod
    def _reject(reason: str) -> SizingResult:
        logger.warning(f"Sizing rejected: {reason}")
        return SizingResult(approved=False, rejection_reason=reason)
