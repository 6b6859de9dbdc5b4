"""
Paper Connector Module
======================
In-memory feed, venue and account for simulation and tests.

- Bars, tick, indicator snapshot and conversion prices are set directly
- Market orders fill immediately at the current bid/ask
- Positions close manually or when the tick crosses their stop/target,
  producing entry and exit deals like a real history
- A synthetic random-walk history drives `main_live.py --simulation`
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import numpy as np
import polars as pl
from loguru import logger

from .config import IndicatorConfig
from .indicators import IndicatorSnapshot, compute_snapshot
from .mt5_connector import (
    AccountInfo,
    BrokerConnector,
    DealRecord,
    OrderRequest,
    OrderResult,
    PositionSide,
    SymbolInfo,
    TickData,
    VenuePosition,
)


TIMEFRAME_MINUTES = {"M1": 1, "M5": 5, "M15": 15, "M30": 30, "H1": 60, "H4": 240, "D1": 1440}


def default_symbol_info(symbol: str = "EURUSD") -> SymbolInfo:
    """Typical 5-digit FX contract."""
    return SymbolInfo(
        name=symbol,
        digits=5,
        point=0.00001,
        tick_size=0.00001,
        tick_value=1.0,
        contract_size=100000,
        volume_min=0.01,
        volume_max=100.0,
        volume_step=0.01,
        stops_level=10,
        currency_profit=symbol[3:6] or "USD",
        currency_margin=symbol[:3] or "USD",
        currency_base=symbol[:3] or "EUR",
    )


def generate_bars(
    count: int,
    base_price: float = 1.1000,
    timeframe: str = "M15",
    end_time: Optional[datetime] = None,
    seed: int = 42,
) -> pl.DataFrame:
    """Synthetic random-walk OHLCV bars, oldest first."""
    rng = np.random.default_rng(seed)

    returns = rng.standard_normal(count) * 0.001
    opens = base_price * np.exp(np.cumsum(returns))
    closes = opens * (1 + rng.standard_normal(count) * 0.0005)
    highs = np.maximum(opens, closes) * (1 + np.abs(rng.standard_normal(count)) * 0.0003)
    lows = np.minimum(opens, closes) * (1 - np.abs(rng.standard_normal(count)) * 0.0003)
    volumes = rng.integers(100, 10000, count).astype(float)

    minutes = TIMEFRAME_MINUTES.get(timeframe, 15)
    end_time = end_time or datetime.now(timezone.utc).replace(second=0, microsecond=0)
    times = [end_time - timedelta(minutes=minutes * (count - i - 1)) for i in range(count)]

    return pl.DataFrame({
        "time": times,
        "open": opens,
        "high": highs,
        "low": lows,
        "close": closes,
        "volume": volumes,
    })


class PaperConnector(BrokerConnector):
    """Simulated broker with immediate fills and a scripted feed."""

    def __init__(
        self,
        symbol: str = "EURUSD",
        magic: int = 0,
        indicators: Optional[IndicatorConfig] = None,
        balance: float = 10000.0,
        currency: str = "USD",
        symbol_info: Optional[SymbolInfo] = None,
    ):
        super().__init__(symbol=symbol, magic=magic)
        self.indicator_config = indicators or IndicatorConfig()
        self.symbol_info = symbol_info or default_symbol_info(symbol)
        self.account = AccountInfo(balance=balance, equity=balance, free_margin=balance, currency=currency)

        self.bars: pl.DataFrame = pl.DataFrame()
        self.htf_bars: Optional[pl.DataFrame] = None
        self.tick: Optional[TickData] = None
        self.snapshot: Optional[IndicatorSnapshot] = None
        self.prices: Dict[str, float] = {}
        self.spread = 0.00010

        self.reject_orders = False
        self.connected = False

        self._positions: Dict[int, VenuePosition] = {}
        self._deals: Dict[int, List[DealRecord]] = {}
        self._next_ticket = 1000
        self._next_deal = 50000
        self._rng = np.random.default_rng(7)

    def connect(self) -> bool:
        self.connected = True
        logger.info("Simulation mode - connected")
        return True

    def disconnect(self):
        self.connected = False

    # === Scripting ===

    def set_bars(self, bars: pl.DataFrame, update_tick: bool = True):
        """Replace the closed-bar history; the tick follows the last close."""
        self.bars = bars
        if update_tick and len(bars) > 0:
            last = bars.row(len(bars) - 1, named=True)
            self.set_tick(bid=last["close"], when=last["time"])

    def set_tick(self, bid: float, ask: Optional[float] = None, when: Optional[datetime] = None):
        ask = bid + self.spread if ask is None else ask
        self.tick = TickData(time=when or datetime.now(timezone.utc), bid=bid, ask=ask)

    def set_indicators(self, snapshot: Optional[IndicatorSnapshot]):
        """Fix the snapshot; None recomputes it from the bars."""
        self.snapshot = snapshot

    def set_price(self, symbol: str, bid: float):
        self.prices[symbol] = bid

    @classmethod
    def with_synthetic_history(
        cls,
        symbol: str = "EURUSD",
        count: int = 500,
        indicators: Optional[IndicatorConfig] = None,
        **kwargs,
    ) -> "PaperConnector":
        """Connector preloaded with a random-walk history."""
        connector = cls(symbol=symbol, indicators=indicators, **kwargs)
        timeframe = connector.indicator_config.timeframe
        connector.set_bars(generate_bars(count, timeframe=timeframe))
        if connector.indicator_config.use_mtf:
            connector.htf_bars = generate_bars(
                connector.indicator_config.mtf_ma_period + 10,
                timeframe=connector.indicator_config.mtf_timeframe,
                seed=43,
            )
        return connector

    def advance(self) -> dict:
        """Append one synthetic bar, move the tick and fire stops/targets."""
        last = self.bars.row(len(self.bars) - 1, named=True)
        minutes = TIMEFRAME_MINUTES.get(self.indicator_config.timeframe, 15)

        open_ = last["close"]
        close = open_ * (1 + self._rng.standard_normal() * 0.001)
        high = max(open_, close) * (1 + abs(self._rng.standard_normal()) * 0.0003)
        low = min(open_, close) * (1 - abs(self._rng.standard_normal()) * 0.0003)

        bar = pl.DataFrame({
            "time": [last["time"] + timedelta(minutes=minutes)],
            "open": [open_],
            "high": [high],
            "low": [low],
            "close": [close],
            "volume": [float(self._rng.integers(100, 10000))],
        })
        self.set_bars(pl.concat([self.bars, bar]))
        self.check_stops(high=high, low=low)
        return bar.row(0, named=True)

    # === Feed ===

    def get_bars(self, count: int, offset: int = 1, timeframe: Optional[str] = None) -> pl.DataFrame:
        frame = self.bars
        if timeframe and timeframe.upper() != self.indicator_config.timeframe.upper():
            frame = self.htf_bars if self.htf_bars is not None else pl.DataFrame()
        if len(frame) == 0:
            return frame
        # Stored bars are all closed; offsets beyond 1 drop the newest ones
        if offset > 1:
            frame = frame.head(max(len(frame) - (offset - 1), 0))
        return frame.tail(count)

    def get_tick(self) -> Optional[TickData]:
        return self.tick

    def get_indicators(self) -> Optional[IndicatorSnapshot]:
        if self.snapshot is not None:
            return self.snapshot
        if len(self.bars) == 0:
            return None

        cfg = self.indicator_config
        return compute_snapshot(
            self.bars,
            atr_period=cfg.atr_period,
            ma_period=cfg.ma_period,
            adx_period=cfg.adx_period,
            rsi_period=cfg.rsi_period,
            htf_df=self.htf_bars if cfg.use_mtf else None,
            htf_ma_period=cfg.mtf_ma_period,
        )

    # === Venue ===

    def submit_order(self, request: OrderRequest) -> OrderResult:
        if self.reject_orders:
            return OrderResult(success=False, retcode=10006, comment="Request rejected")
        if self.tick is None:
            return OrderResult(success=False, comment="No price")
        if request.volume <= 0:
            return OrderResult(success=False, retcode=10014, comment="Invalid volume")

        price = self.tick.ask if request.side is PositionSide.LONG else self.tick.bid
        ticket = self._next_ticket
        self._next_ticket += 1

        self._positions[ticket] = VenuePosition(
            ticket=ticket,
            side=request.side,
            volume=request.volume,
            price_open=price,
            sl=request.sl,
            tp=request.tp,
            time=self.tick.time,
        )
        self._deals[ticket] = [self._deal(ticket, is_exit=False, price=price, volume=request.volume, profit=0.0)]

        return OrderResult(
            success=True,
            ticket=ticket,
            retcode=10009,
            comment="Request executed",
            price=price,
            volume=request.volume,
            sl=request.sl,
            tp=request.tp,
        )

    def modify_stop(self, ticket: int, sl: float, tp: float) -> bool:
        position = self._positions.get(ticket)
        if position is None:
            return False
        position.sl = sl
        position.tp = tp
        return True

    def is_position_open(self, ticket: int) -> bool:
        return ticket in self._positions

    def get_open_positions(self) -> List[VenuePosition]:
        return list(self._positions.values())

    def get_position_deals(self, ticket: int) -> List[DealRecord]:
        return list(self._deals.get(ticket, []))

    def close_position(
        self,
        ticket: int,
        price: Optional[float] = None,
        record_deals: bool = True,
        commission: float = 0.0,
        swap: float = 0.0,
        volume: Optional[float] = None,
    ) -> float:
        """
        Close a position at price (default: current bid/ask).

        Args:
            record_deals: False drops the whole history, as a venue that
                lost the deals would
            volume: Partial close size; the position stays open with the rest

        Returns:
            Realized profit in account currency
        """
        position = self._positions[ticket]
        if price is None:
            price = self.tick.bid if position.side is PositionSide.LONG else self.tick.ask

        if volume is None or volume >= position.volume:
            volume = position.volume
            del self._positions[ticket]
        else:
            position.volume = round(position.volume - volume, 8)

        profit = round(self.price_move_value(position, price, volume), 2)
        if record_deals:
            self._deals[ticket].append(self._deal(
                ticket, is_exit=True, price=price, volume=volume,
                profit=profit, commission=commission, swap=swap,
            ))
        else:
            self._deals.pop(ticket, None)

        self.account.balance += profit + commission + swap
        self._refresh_equity()
        logger.debug(f"Paper close #{ticket} {volume} @ {price} profit={profit:.2f}")
        return profit

    def check_stops(self, high: Optional[float] = None, low: Optional[float] = None) -> List[int]:
        """Close positions whose stop or target lies inside [low, high]."""
        if self.tick is None:
            return []
        high = self.tick.bid if high is None else high
        low = self.tick.bid if low is None else low

        closed = []
        for ticket, pos in list(self._positions.items()):
            if pos.side is PositionSide.LONG:
                if pos.sl > 0 and low <= pos.sl:
                    exit_price = pos.sl
                elif pos.tp > 0 and high >= pos.tp:
                    exit_price = pos.tp
                else:
                    continue
            else:
                if pos.sl > 0 and high >= pos.sl:
                    exit_price = pos.sl
                elif pos.tp > 0 and low <= pos.tp:
                    exit_price = pos.tp
                else:
                    continue
            self.close_position(ticket, price=exit_price)
            closed.append(ticket)
        return closed

    def price_move_value(self, position: VenuePosition, price: float,
                         volume: Optional[float] = None) -> float:
        info = self.symbol_info
        move = (price - position.price_open) * position.side.sign
        volume = position.volume if volume is None else volume
        return move / info.tick_size * info.tick_value * volume

    # === Account ===

    def get_account_info(self) -> Optional[AccountInfo]:
        self._refresh_equity()
        return AccountInfo(
            balance=self.account.balance,
            equity=self.account.equity,
            free_margin=self.account.free_margin,
            currency=self.account.currency,
        )

    def get_symbol_info(self) -> Optional[SymbolInfo]:
        return self.symbol_info

    def get_symbol_price(self, symbol: str) -> Optional[float]:
        if symbol == self.symbol and self.tick is not None:
            return self.tick.bid
        return self.prices.get(symbol)

    # === Internals ===

    def _deal(self, ticket: int, is_exit: bool, price: float, volume: float, profit: float,
              commission: float = 0.0, swap: float = 0.0) -> DealRecord:
        deal_id = self._next_deal
        self._next_deal += 1
        return DealRecord(
            deal_id=deal_id,
            position_id=ticket,
            is_exit=is_exit,
            price=price,
            volume=volume,
            profit=profit,
            time=self.tick.time if self.tick else datetime.now(timezone.utc),
            commission=commission,
            swap=swap,
        )

    def _refresh_equity(self):
        floating = 0.0
        if self.tick is not None:
            for pos in self._positions.values():
                price = self.tick.bid if pos.side is PositionSide.LONG else self.tick.ask
                floating += self.price_move_value(pos, price)
        self.account.equity = self.account.balance + floating
        self.account.free_margin = self.account.equity
