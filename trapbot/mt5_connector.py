"""
Broker Connector Module
=======================
Feed, venue and account collaborators for the engine.

BrokerConnector declares every operation the engine needs from the outside
world. MT5Connector implements it against a MetaTrader 5 terminal; bars are
converted to Polars DataFrames immediately after fetching.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

import polars as pl
from loguru import logger

from .config import IndicatorConfig
from .indicators import IndicatorSnapshot, compute_snapshot

try:
    import MetaTrader5 as mt5
except ImportError:
    logger.warning("MetaTrader5 not installed. Only simulation mode is available.")
    mt5 = None


BAR_COLUMNS = ["time", "open", "high", "low", "close", "volume"]


class PositionSide(Enum):
    """Position direction."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is PositionSide.LONG else -1


@dataclass
class TickData:
    """Best bid/ask snapshot."""
    time: datetime
    bid: float
    ask: float

    @property
    def spread(self) -> float:
        return self.ask - self.bid


@dataclass
class SymbolInfo:
    """Contract economics and trading constraints of the instrument."""
    name: str
    digits: int
    point: float
    tick_size: float
    tick_value: float
    contract_size: float
    volume_min: float
    volume_max: float
    volume_step: float
    stops_level: int = 0            # Minimum SL/TP distance in points
    currency_profit: str = "USD"    # Settlement currency
    currency_margin: str = "USD"
    currency_base: str = "EUR"

    @property
    def min_stop_distance(self) -> float:
        return self.stops_level * self.point

    @property
    def pip_size(self) -> float:
        # 5/3-digit quotes carry a fractional pip
        return self.point * 10 if self.digits in (3, 5) else self.point


@dataclass
class AccountInfo:
    balance: float
    equity: float
    free_margin: float
    currency: str = "USD"


@dataclass
class OrderRequest:
    """Market order to submit."""
    side: PositionSide
    volume: float
    sl: float
    tp: float
    comment: str = "LiquidityTrap"


@dataclass
class OrderResult:
    """Order execution result."""
    success: bool
    ticket: Optional[int] = None
    retcode: Optional[int] = None
    comment: str = ""
    price: float = 0.0
    volume: float = 0.0
    sl: float = 0.0
    tp: float = 0.0


@dataclass
class DealRecord:
    """A single fill in the execution history of a position."""
    deal_id: int
    position_id: int
    is_exit: bool
    price: float
    volume: float
    profit: float
    time: datetime
    commission: float = 0.0
    swap: float = 0.0


@dataclass
class VenuePosition:
    """A live position as reported by the venue."""
    ticket: int
    side: PositionSide
    volume: float
    price_open: float
    sl: float
    tp: float
    time: datetime
    profit: float = 0.0


class BrokerConnector(ABC):
    """
    Everything the engine consumes from the host environment.

    Data queries return None (or an empty DataFrame) when data is
    unavailable; the engine skips the cycle in that case.
    """

    def __init__(self, symbol: str, magic: int = 0):
        self.symbol = symbol
        self.magic = magic

    def connect(self) -> bool:
        return True

    def disconnect(self):
        pass

    # --- Feed ---

    @abstractmethod
    def get_bars(self, count: int, offset: int = 1, timeframe: Optional[str] = None) -> pl.DataFrame:
        """Closed bars, oldest first, with BAR_COLUMNS. offset=1 skips the forming bar."""

    @abstractmethod
    def get_tick(self) -> Optional[TickData]:
        """Current best bid/ask."""

    @abstractmethod
    def get_indicators(self) -> Optional[IndicatorSnapshot]:
        """Current and previous indicator values."""

    # --- Venue ---

    @abstractmethod
    def submit_order(self, request: OrderRequest) -> OrderResult:
        """Submit a market order and wait for the fill or rejection."""

    @abstractmethod
    def modify_stop(self, ticket: int, sl: float, tp: float) -> bool:
        """Move the stop of an open position."""

    @abstractmethod
    def is_position_open(self, ticket: int) -> bool:
        """True while the venue still reports the position as open."""

    @abstractmethod
    def get_open_positions(self) -> List[VenuePosition]:
        """Live positions for this symbol and magic number."""

    @abstractmethod
    def get_position_deals(self, ticket: int) -> List[DealRecord]:
        """Execution history of a position."""

    # --- Account ---

    @abstractmethod
    def get_account_info(self) -> Optional[AccountInfo]:
        """Balance, free margin, currency."""

    @abstractmethod
    def get_symbol_info(self) -> Optional[SymbolInfo]:
        """Economics of the traded symbol."""

    @abstractmethod
    def get_symbol_price(self, symbol: str) -> Optional[float]:
        """Bid of any symbol, used for currency conversion. None if not quoted."""


class MT5Connector(BrokerConnector):
    """
    MetaTrader 5 connection handler with Polars integration.

    Features:
    - Automatic reconnection with exponential backoff
    - Direct conversion to Polars DataFrame
    - Deal history lookup for closed-position reconciliation
    """

    TIMEFRAMES = {
        "M1": mt5.TIMEFRAME_M1 if mt5 else 1,
        "M5": mt5.TIMEFRAME_M5 if mt5 else 5,
        "M15": mt5.TIMEFRAME_M15 if mt5 else 15,
        "M30": mt5.TIMEFRAME_M30 if mt5 else 30,
        "H1": mt5.TIMEFRAME_H1 if mt5 else 16385,
        "H4": mt5.TIMEFRAME_H4 if mt5 else 16388,
        "D1": mt5.TIMEFRAME_D1 if mt5 else 16408,
    }

    RETCODE_DONE = 10009

    # Connection error codes (for auto-reconnect detection)
    CONNECTION_ERRORS = [-10004, -10003, -1, -10001, -10002]

    def __init__(
        self,
        login: int,
        password: str,
        server: str,
        symbol: str,
        magic: int,
        indicators: IndicatorConfig,
        path: Optional[str] = None,
        timeout: int = 60000,
        deviation: int = 20,
    ):
        super().__init__(symbol=symbol, magic=magic)
        self.login = login
        self._password = password
        self.server = server
        self.path = path
        self.timeout = timeout
        self.deviation = deviation
        self.indicator_config = indicators
        self._connected = False

    def connect(self, max_retries: int = 3) -> bool:
        """
        Connect to the MT5 terminal with retry logic.

        Raises:
            ConnectionError: if every attempt fails
        """
        if mt5 is None:
            raise ConnectionError("MetaTrader5 package is not installed")

        for attempt in range(max_retries):
            kwargs = {
                "login": self.login,
                "password": self._password,
                "server": self.server,
                "timeout": self.timeout,
            }
            if self.path:
                kwargs["path"] = self.path

            if mt5.initialize(**kwargs):
                terminal_info = mt5.terminal_info()
                if terminal_info is not None and terminal_info.connected:
                    mt5.symbol_select(self.symbol, True)
                    self._connected = True
                    logger.info(f"Connected to MT5: {self.server} (Account: {self.login})")
                    return True
                logger.warning("Terminal not connected to trade server, retrying...")
                mt5.shutdown()
            else:
                logger.warning(f"Connection attempt {attempt + 1} failed: {mt5.last_error()}")

            wait_time = 2 ** (attempt + 1)
            logger.info(f"Waiting {wait_time}s before retry...")
            time.sleep(wait_time)

        raise ConnectionError(f"Failed to connect to MT5 after {max_retries} attempts")

    def disconnect(self):
        """Safely disconnect from MT5."""
        if self._connected and mt5:
            mt5.shutdown()
            self._connected = False
            logger.info("Disconnected from MT5")

    def ensure_connected(self) -> bool:
        """Ensure MT5 is connected, reconnect once if the account query fails."""
        if not mt5:
            return False
        if self._connected and mt5.account_info() is not None:
            return True

        self._connected = False
        logger.warning("MT5 connection lost, reconnecting...")
        try:
            return self.connect(max_retries=2)
        except ConnectionError as e:
            logger.error(f"Reconnection failed: {e}")
            return False

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False

    # --- Feed ---

    def get_bars(self, count: int, offset: int = 1, timeframe: Optional[str] = None) -> pl.DataFrame:
        tf_name = (timeframe or self.indicator_config.timeframe).upper()
        tf = self.TIMEFRAMES.get(tf_name)
        if tf is None:
            raise ValueError(f"Invalid timeframe: {tf_name}")

        if not self.ensure_connected():
            return self._create_empty_dataframe()

        rates = mt5.copy_rates_from_pos(self.symbol, tf, offset, count)
        if rates is None or len(rates) == 0:
            error = mt5.last_error()
            logger.warning(f"Failed to get {tf_name} bars for {self.symbol}: {error}")
            if error and error[0] in self.CONNECTION_ERRORS:
                self._connected = False
            return self._create_empty_dataframe()

        return pl.DataFrame({
            "time": [datetime.fromtimestamp(int(r["time"]), tz=timezone.utc) for r in rates],
            "open": rates["open"].astype(float),
            "high": rates["high"].astype(float),
            "low": rates["low"].astype(float),
            "close": rates["close"].astype(float),
            "volume": rates["tick_volume"].astype(float),
        })

    def get_tick(self) -> Optional[TickData]:
        if not self.ensure_connected():
            return None
        tick = mt5.symbol_info_tick(self.symbol)
        if tick is None:
            return None
        return TickData(
            time=datetime.fromtimestamp(tick.time, tz=timezone.utc),
            bid=tick.bid,
            ask=tick.ask,
        )

    def get_indicators(self) -> Optional[IndicatorSnapshot]:
        cfg = self.indicator_config
        history = max(cfg.ma_period, cfg.adx_period * 2, cfg.atr_period, cfg.rsi_period) * 4
        bars = self.get_bars(history, offset=1)
        if len(bars) == 0:
            return None

        htf_bars = None
        if cfg.use_mtf:
            htf_bars = self.get_bars(cfg.mtf_ma_period + 5, offset=1, timeframe=cfg.mtf_timeframe)
            if len(htf_bars) == 0:
                return None

        return compute_snapshot(
            bars,
            atr_period=cfg.atr_period,
            ma_period=cfg.ma_period,
            adx_period=cfg.adx_period,
            rsi_period=cfg.rsi_period,
            htf_df=htf_bars,
            htf_ma_period=cfg.mtf_ma_period,
        )

    # --- Venue ---

    def submit_order(self, request: OrderRequest) -> OrderResult:
        if not self.ensure_connected():
            return OrderResult(success=False, comment="MT5 not connected")

        tick = mt5.symbol_info_tick(self.symbol)
        if tick is None:
            return OrderResult(success=False, comment="Failed to get tick data")

        if request.side is PositionSide.LONG:
            mt5_type = mt5.ORDER_TYPE_BUY
            price = tick.ask
        else:
            mt5_type = mt5.ORDER_TYPE_SELL
            price = tick.bid

        order = {
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": self.symbol,
            "volume": float(request.volume),
            "type": mt5_type,
            "price": float(price),
            "sl": float(request.sl),
            "tp": float(request.tp),
            "deviation": self.deviation,
            "magic": self.magic,
            "comment": request.comment,
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": mt5.ORDER_FILLING_IOC,
        }

        result = mt5.order_send(order)
        if result is None:
            return OrderResult(success=False, comment=f"order_send returned None: {mt5.last_error()}")

        if result.retcode != self.RETCODE_DONE:
            return OrderResult(success=False, retcode=result.retcode, comment=result.comment)

        # The position id of a market deal equals the opening order ticket
        return OrderResult(
            success=True,
            ticket=result.order,
            retcode=result.retcode,
            comment=result.comment,
            price=result.price,
            volume=result.volume,
            sl=request.sl,
            tp=request.tp,
        )

    def modify_stop(self, ticket: int, sl: float, tp: float) -> bool:
        if not self.ensure_connected():
            return False
        result = mt5.order_send({
            "action": mt5.TRADE_ACTION_SLTP,
            "symbol": self.symbol,
            "position": ticket,
            "sl": float(sl),
            "tp": float(tp),
        })
        if result is None or result.retcode != self.RETCODE_DONE:
            comment = result.comment if result else mt5.last_error()
            logger.warning(f"Modify SL #{ticket} failed: {comment}")
            return False
        return True

    def is_position_open(self, ticket: int) -> bool:
        if not self.ensure_connected():
            # Unknown state: keep tracking rather than report a false close
            return True
        positions = mt5.positions_get(ticket=ticket)
        if positions is None:
            error = mt5.last_error()
            if error and error[0] != 1:
                logger.warning(f"positions_get failed for #{ticket}: {error}")
                return True
            return False
        return len(positions) > 0

    def get_open_positions(self) -> List[VenuePosition]:
        if not self.ensure_connected():
            return []
        positions = mt5.positions_get(symbol=self.symbol) or []
        return [
            VenuePosition(
                ticket=p.ticket,
                side=PositionSide.LONG if p.type == mt5.POSITION_TYPE_BUY else PositionSide.SHORT,
                volume=p.volume,
                price_open=p.price_open,
                sl=p.sl,
                tp=p.tp,
                time=datetime.fromtimestamp(p.time, tz=timezone.utc),
                profit=p.profit,
            )
            for p in positions
            if p.magic == self.magic
        ]

    def get_position_deals(self, ticket: int) -> List[DealRecord]:
        if not self.ensure_connected():
            return []
        deals = mt5.history_deals_get(position=ticket)
        if not deals:
            return []
        exit_entries = (mt5.DEAL_ENTRY_OUT, mt5.DEAL_ENTRY_OUT_BY, mt5.DEAL_ENTRY_INOUT)
        return [
            DealRecord(
                deal_id=d.ticket,
                position_id=d.position_id,
                is_exit=d.entry in exit_entries,
                price=d.price,
                volume=d.volume,
                profit=d.profit,
                commission=d.commission,
                swap=d.swap,
                time=datetime.fromtimestamp(d.time, tz=timezone.utc),
            )
            for d in deals
        ]

    # --- Account ---

    def get_account_info(self) -> Optional[AccountInfo]:
        if not self.ensure_connected():
            return None
        info = mt5.account_info()
        if info is None:
            return None
        return AccountInfo(
            balance=info.balance,
            equity=info.equity,
            free_margin=info.margin_free,
            currency=info.currency,
        )

    def get_symbol_info(self) -> Optional[SymbolInfo]:
        if not self.ensure_connected():
            return None
        info = mt5.symbol_info(self.symbol)
        if info is None:
            return None
        return SymbolInfo(
            name=info.name,
            digits=info.digits,
            point=info.point,
            tick_size=info.trade_tick_size,
            tick_value=info.trade_tick_value,
            contract_size=info.trade_contract_size,
            volume_min=info.volume_min,
            volume_max=info.volume_max,
            volume_step=info.volume_step,
            stops_level=info.trade_stops_level,
            currency_profit=info.currency_profit,
            currency_margin=info.currency_margin,
            currency_base=info.currency_base,
        )

    def get_symbol_price(self, symbol: str) -> Optional[float]:
        if not self.ensure_connected():
            return None
        if not mt5.symbol_select(symbol, True):
            return None
        tick = mt5.symbol_info_tick(symbol)
        if tick is None or tick.bid <= 0:
            return None
        return tick.bid

    def _create_empty_dataframe(self) -> pl.DataFrame:
        """Empty bar frame with the expected schema."""
        return pl.DataFrame({
            "time": pl.Series([], dtype=pl.Datetime("us", "UTC")),
            "open": pl.Series([], dtype=pl.Float64),
            "high": pl.Series([], dtype=pl.Float64),
            "low": pl.Series([], dtype=pl.Float64),
            "close": pl.Series([], dtype=pl.Float64),
            "volume": pl.Series([], dtype=pl.Float64),
        })


def account_summary(info: AccountInfo) -> Dict[str, float]:
    """Flatten account info for status output."""
    return {
        "balance": info.balance,
        "equity": info.equity,
        "free_margin": info.free_margin,
    }
