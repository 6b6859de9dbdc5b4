"""
End-to-End Tests for the Liquidity Trap Engine
==============================================
Engine cycles against the paper connector.

Run with: pytest tests/test_engine.py -v
"""

import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import polars as pl
import pytest

from conftest import BASE_BAR, make_bars
from trapbot.engine import EngineInitError, LiquidityTrapEngine
from trapbot.mt5_connector import OrderRequest, PositionSide
from trapbot.regime_detector import TrendRegime
from trapbot.trade_logger import TradeLogger


@pytest.fixture
def engine(config, trap_connector):
    engine = LiquidityTrapEngine(config, trap_connector, TradeLogger(config.report_dir))
    engine.initialize()
    return engine


class TestInitialization:

    def test_initialize(self, engine):
        status = engine.get_status()
        assert status["initialized"] is True
        assert status["symbol"] == "US500"
        assert status["open_positions"] == []
        assert status["account"]["balance"] == pytest.approx(10000.0)

    def test_no_history_is_fatal(self, config, trap_connector):
        trap_connector.set_bars(pl.DataFrame(), update_tick=False)
        engine = LiquidityTrapEngine(config, trap_connector)
        with pytest.raises(EngineInitError):
            engine.initialize()

    def test_no_indicators_is_fatal(self, config, trap_connector):
        trap_connector.set_indicators(None)
        engine = LiquidityTrapEngine(config, trap_connector)
        with pytest.raises(EngineInitError, match="Indicator"):
            engine.initialize()

    def test_no_symbol_info_is_fatal(self, config, trap_connector):
        trap_connector.symbol_info = None
        engine = LiquidityTrapEngine(config, trap_connector)
        with pytest.raises(EngineInitError, match="Symbol"):
            engine.initialize()

    def test_adopts_live_positions(self, config, trap_connector):
        trap_connector.submit_order(OrderRequest(PositionSide.LONG, 1.0, sl=99.0, tp=103.0))
        engine = LiquidityTrapEngine(config, trap_connector)
        engine.initialize()

        records = engine.positions.open_records()
        assert len(records) == 1
        assert records[0].adopted is True
        assert engine.positions.tracked_tickets == {records[0].ticket}

    def test_restores_adaptive_state(self, config, trap_connector):
        first = LiquidityTrapEngine(config, trap_connector)
        first.controller.record_trade_result(-5.0)
        first.controller.record_trade_result(-5.0)
        first.controller.save_state(config.state_file)

        second = LiquidityTrapEngine(config, trap_connector)
        second.initialize()
        assert second.controller.state.consecutive_losses == 2


class TestTradingCycle:

    def test_short_trap_opens_one_position(self, engine):
        engine.controller.record_trade_result(25.0)
        assert engine.controller.state.consecutive_wins == 1

        record = engine.run_cycle()

        assert record is not None
        assert record.side == PositionSide.SHORT
        assert record.regime == TrendRegime.DOWN
        assert record.entry_price == pytest.approx(100.4)
        assert record.initial_sl == pytest.approx(102.0)
        assert record.initial_tp == pytest.approx(97.2)
        assert record.volume == pytest.approx(62.5)
        assert engine.positions.tracked_tickets == {record.ticket}
        assert engine.controller.state.consecutive_wins == 0

    def test_closed_trade_feeds_controller_and_report(self, engine, trap_connector, config):
        record = engine.run_cycle()
        trap_connector.close_position(record.ticket, price=97.2)

        engine.run_cycle()

        assert record.is_closed
        assert record.close.target_hit is True
        assert record.close.profit == pytest.approx(200.0)
        assert engine.controller.state.consecutive_wins == 1
        assert engine.trade_logger.trades_logged == 1
        assert Path(config.state_file).exists()
        assert len(engine.positions.closed_records()) == 1

    def test_paused_engine_does_not_trade(self, engine):
        for _ in range(5):
            engine.controller.record_trade_result(-10.0)

        assert engine.run_cycle() is None
        assert engine.controller.state.paused is True
        assert engine.positions.open_count == 0

    def test_position_limit(self, engine, config):
        config.risk.max_positions = 1
        assert engine.run_cycle() is not None
        assert engine.run_cycle() is None
        assert engine.positions.open_count == 1

    def test_no_signal_on_quiet_bar(self, config, trap_connector):
        trap_connector.set_bars(make_bars([BASE_BAR] * 21))
        engine = LiquidityTrapEngine(config, trap_connector)
        engine.initialize()
        assert engine.run_cycle() is None

    def test_missing_indicators_skip_cycle(self, engine, trap_connector):
        trap_connector.set_indicators(None)
        assert engine.run_cycle() is None
        assert engine.positions.open_count == 0

    def test_poll_waits_for_new_bar(self, engine):
        assert engine.poll() is None
        assert engine.get_status()["bars_processed"] == 0

    def test_analytics_cadence(self, engine, config):
        config.analytics_every_bars = 1
        engine.run_cycle()
        assert engine.last_report is not None
        assert engine.get_status()["analytics"]["trades"] == 0


class TestShutdown:

    def test_shutdown_saves_state_and_disconnects(self, engine, trap_connector, config):
        engine.shutdown()
        assert Path(config.state_file).exists()
        assert trap_connector.connected is False

    def test_failed_start_keeps_saved_state(self, config, trap_connector, monkeypatch):
        Path(config.state_file).parent.mkdir(parents=True, exist_ok=True)
        Path(config.state_file).write_text(json.dumps({
            "consecutive_losses": 6,
            "consecutive_wins": 0,
            "paused": True,
            "pause_bars_elapsed": 2,
        }))
        monkeypatch.setattr(trap_connector, "connect", lambda: False)

        engine = LiquidityTrapEngine(config, trap_connector)
        with pytest.raises(EngineInitError):
            engine.initialize()
        engine.shutdown()

        saved = json.loads(Path(config.state_file).read_text())
        assert saved["consecutive_losses"] == 6
        assert saved["paused"] is True
