"""
Liquidity Trap Engine
=====================
Processing-cycle orchestrator.

Per closed bar:
1. Detect closed positions and feed outcomes to the adaptive controller
2. Refresh adaptive parameters, classify the market
3. Heal the tracked set, trail open stops
4. Entry check (pause state machine), entry gates
5. Liquidity zones -> trap signal -> sizing -> order

Analytics are recomputed every N bars. Between bars only closures and
trailing are checked. Everything runs synchronously on the caller's thread.
"""

from typing import Dict, List, Optional

from loguru import logger

from .adaptive_risk import AdaptiveRiskController
from .config import TradingConfig
from .liquidity_detector import LiquidityTrapDetector
from .mt5_connector import BrokerConnector, SymbolInfo, account_summary
from .position_manager import PositionLifecycleManager, PositionRecord
from .regime_detector import MarketCondition, MarketConditionClassifier
from .risk_engine import PositionSizer
from .risk_metrics import PerformanceAnalytics, PerformanceReport
from .trade_logger import TradeLogger


class EngineInitError(RuntimeError):
    """Fatal start-up failure: no feed, no indicators or no symbol economics."""


class LiquidityTrapEngine:
    """Wires the six components together and drives them bar by bar."""

    def __init__(
        self,
        config: TradingConfig,
        connector: BrokerConnector,
        trade_logger: Optional[TradeLogger] = None,
    ):
        self.config = config
        self.connector = connector
        self.trade_logger = trade_logger

        self.classifier = MarketConditionClassifier(use_mtf=config.indicators.use_mtf)
        self.controller = AdaptiveRiskController(
            base_risk_percent=config.risk.base_risk_percent,
            indicators=config.indicators,
            adaptive=config.adaptive,
            pause=config.pause,
        )
        signal = config.signal
        self.detector = LiquidityTrapDetector(
            lookback_bars=signal.lookback_bars,
            wick_ratio=signal.wick_ratio,
            body_ratio=signal.body_ratio,
            use_volume_profile=signal.use_volume_profile,
            profile_buckets=signal.profile_buckets,
            allow_range_trades=signal.allow_range_trades,
        )
        self.sizer = PositionSizer(price_of=connector.get_symbol_price)
        self.positions = PositionLifecycleManager(
            connector=connector,
            controller=self.controller,
            sizer=self.sizer,
            risk=config.risk,
            trailing=config.trailing,
        )
        self.analytics = PerformanceAnalytics()

        self.symbol_info: Optional[SymbolInfo] = None
        self.last_condition: Optional[MarketCondition] = None
        self.last_report: Optional[PerformanceReport] = None
        self._last_bar_time = None
        self._bars_processed = 0
        self._initialized = False

    @property
    def bars_needed(self) -> int:
        signal = self.config.signal
        needed = signal.lookback_bars + 1
        if signal.use_volume_profile:
            needed = max(needed, signal.profile_lookback_bars)
        return needed

    # === Lifecycle ===

    def initialize(self):
        """
        Connect, validate the feed and adopt live positions.

        Raises:
            EngineInitError: when the engine cannot operate
        """
        try:
            connected = self.connector.connect()
        except ConnectionError as e:
            raise EngineInitError(f"Connection failed: {e}") from e
        if not connected:
            raise EngineInitError("Connector refused to connect")

        bars = self.connector.get_bars(self.bars_needed)
        if len(bars) < self.config.signal.lookback_bars + 1:
            raise EngineInitError(
                f"Insufficient bar history: {len(bars)} < {self.config.signal.lookback_bars + 1}"
            )

        snapshot = self.connector.get_indicators()
        if snapshot is None:
            raise EngineInitError("Indicator series unavailable")

        self.symbol_info = self.connector.get_symbol_info()
        if self.symbol_info is None:
            raise EngineInitError(f"Symbol info unavailable for {self.connector.symbol}")

        self.controller.load_state(self.config.state_file)
        state = self.controller.refresh()

        tick = self.connector.get_tick()
        price = tick.bid if tick is not None else bars["close"].tail(1).item()
        condition = self.classifier.classify(snapshot, price, state.current_adx_threshold)
        self.last_condition = condition

        adopted = self.positions.adopt_open_positions(
            self.connector.get_open_positions(),
            regime=condition.trend,
            state=state,
            base_risk_percent=self.config.risk.base_risk_percent,
        )

        self._last_bar_time = bars["time"].tail(1).item()
        self._initialized = True

        logger.info(
            f"Engine ready: {self.connector.symbol} market={condition} "
            f"adopted={len(adopted)} losses={state.consecutive_losses}"
        )

    def shutdown(self):
        """Flush the report, save adaptive state, disconnect."""
        if self._initialized:
            self._write_report()
            self.controller.save_state(self.config.state_file)
        else:
            logger.warning("Engine never initialized, adaptive state left untouched")
        self.connector.disconnect()
        logger.info("Engine stopped")

    # === Cycles ===

    def poll(self) -> Optional[PositionRecord]:
        """Run a full cycle on a new closed bar, otherwise a position check."""
        latest = self.connector.get_bars(1)
        if len(latest) == 0:
            logger.warning("No data received from feed")
            return None

        bar_time = latest["time"].tail(1).item()
        if self._last_bar_time is None or bar_time > self._last_bar_time:
            self._last_bar_time = bar_time
            return self.run_cycle()

        self.on_tick()
        return None

    def run_cycle(self) -> Optional[PositionRecord]:
        """
        One bar-driven processing cycle.

        Returns:
            The position opened in this cycle, if any
        """
        bars = self.connector.get_bars(self.bars_needed)
        if len(bars) < self.config.signal.lookback_bars + 1:
            logger.warning(f"Skipping cycle: only {len(bars)} bars available")
            return None

        snapshot = self.connector.get_indicators()
        tick = self.connector.get_tick()
        account = self.connector.get_account_info()
        symbol = self.connector.get_symbol_info() or self.symbol_info
        if snapshot is None or tick is None or account is None or symbol is None:
            logger.warning("Skipping cycle: indicator, tick, account or symbol data unavailable")
            return None
        self.symbol_info = symbol

        atr = snapshot.atr if snapshot.atr > 0 else snapshot.atr_prev
        if atr <= 0:
            logger.warning("Skipping cycle: ATR unavailable")
            return None

        closed = self.positions.detect_closed_positions(tick, symbol)
        if closed:
            self._write_report()
            self.controller.save_state(self.config.state_file)

        state = self.controller.refresh()
        condition = self.classifier.classify(snapshot, tick.bid, state.current_adx_threshold, atr=atr)
        self.last_condition = condition

        self.positions.reconcile_tracking()
        self.positions.apply_trailing(tick, atr, symbol)

        self._bars_processed += 1
        every = self.config.analytics_every_bars
        if every > 0 and self._bars_processed % every == 0:
            self.update_analytics(account.balance)

        allowed, reason = self.controller.check_entry_allowed()
        if not allowed:
            logger.info(f"Entry blocked: {reason}")
            return None

        avg_bar = self.detector.average_bar_size(bars, atr)
        allowed, reason = self.positions.check_entry_gates(atr, avg_bar)
        if not allowed:
            logger.debug(f"Entry gated: {reason}")
            return None

        profile_bars = None
        if self.config.signal.use_volume_profile:
            profile_bars = bars.tail(self.config.signal.profile_lookback_bars)
        zones = self.detector.build_zones(bars, atr, profile_bars)
        if zones is None:
            return None

        breakout = self.detector.detect_false_breakout(bars, zones, atr)
        if breakout is not None:
            logger.debug(
                f"False breakout {breakout.side.value} at {breakout.zone_level:.5f} "
                f"(pierce {breakout.pierce:.5f})"
            )

        state = self.controller.state
        signal = self.detector.detect_trap(
            bars,
            zones,
            trend=condition.trend,
            rsi=snapshot.rsi,
            rsi_oversold=state.current_rsi_oversold,
            rsi_overbought=state.current_rsi_overbought,
            atr=atr,
        )
        if signal is None:
            return None

        logger.info(f"Signal: {signal.reason} | market={condition}")
        return self.positions.open_position(
            signal, tick, atr, condition.trend, account, symbol, state
        )

    def on_tick(self) -> List[PositionRecord]:
        """Between bars: detect closures and trail stops with the last known ATR."""
        tick = self.connector.get_tick()
        if tick is None or self.symbol_info is None:
            return []

        closed = self.positions.detect_closed_positions(tick, self.symbol_info)
        if closed:
            self._write_report()
            self.controller.save_state(self.config.state_file)

        if self.last_condition is not None:
            self.positions.apply_trailing(tick, self.last_condition.atr, self.symbol_info)
        return closed

    # === Reporting ===

    def update_analytics(self, balance: float) -> PerformanceReport:
        self.last_report = self.analytics.compute(self.positions.closed_records(), balance)
        if self.last_report.trades:
            logger.info("\n" + self.analytics.format_report(self.last_report))
        return self.last_report

    def get_status(self) -> Dict:
        """Snapshot of the engine for dashboards and logs."""
        account = self.connector.get_account_info()
        return {
            "symbol": self.connector.symbol,
            "initialized": self._initialized,
            "bars_processed": self._bars_processed,
            "market": str(self.last_condition) if self.last_condition else None,
            "adaptive": self.controller.get_summary(),
            "open_positions": [r.to_row() for r in self.positions.open_records()],
            "closed_positions": len(self.positions.closed_records()),
            "account": account_summary(account) if account else None,
            "analytics": self.last_report.to_dict() if self.last_report else None,
        }

    def _write_report(self):
        if self.trade_logger is not None:
            self.trade_logger.write_report(self.positions.closed_records())
