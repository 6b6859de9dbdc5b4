"""
Shared fixtures: bar frames, configs and a paper connector.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import polars as pl
import pytest

from trapbot.config import TradingConfig
from trapbot.indicators import IndicatorSnapshot
from trapbot.mt5_connector import SymbolInfo
from trapbot.paper_connector import PaperConnector


START = datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)

BASE_BAR = (100.0, 100.5, 99.5, 100.2)


def make_bars(rows, start=START, minutes=15, volume=1000.0) -> pl.DataFrame:
    """Bars from (open, high, low, close[, volume]) tuples, oldest first."""
    data = {"time": [], "open": [], "high": [], "low": [], "close": [], "volume": []}
    for i, row in enumerate(rows):
        data["time"].append(start + timedelta(minutes=minutes * i))
        data["open"].append(float(row[0]))
        data["high"].append(float(row[1]))
        data["low"].append(float(row[2]))
        data["close"].append(float(row[3]))
        data["volume"].append(float(row[4]) if len(row) > 4 else volume)
    return pl.DataFrame(data)


def short_trap_rows():
    """20 quiet bars with a swing high at 101.5, then a bearish trap bar."""
    rows = [BASE_BAR] * 20
    rows[10] = (100.0, 101.5, 99.5, 100.2)
    rows.append((101.0, 102.5, 100.3, 100.4))
    return rows


def make_snapshot(**overrides) -> IndicatorSnapshot:
    values = dict(
        atr=1.0, atr_prev=1.0,
        ma=101.0, ma_prev=101.0,
        adx=30.0, adx_prev=29.0,
        plus_di=15.0, minus_di=25.0,
        rsi=55.0, rsi_prev=50.0,
        htf_ma=None,
    )
    values.update(overrides)
    return IndicatorSnapshot(**values)


def index_symbol(**overrides) -> SymbolInfo:
    """Index-style contract: 0.01 tick worth 0.01 USD per lot."""
    values = dict(
        name="US500",
        digits=2,
        point=0.01,
        tick_size=0.01,
        tick_value=0.01,
        contract_size=1.0,
        volume_min=0.01,
        volume_max=100.0,
        volume_step=0.01,
        stops_level=10,
        currency_profit="USD",
        currency_margin="USD",
        currency_base="USD",
    )
    values.update(overrides)
    return SymbolInfo(**values)


@pytest.fixture
def config(tmp_path) -> TradingConfig:
    cfg = TradingConfig(
        symbol="US500",
        state_file=str(tmp_path / "adaptive_state.json"),
        report_dir=str(tmp_path / "trade_logs"),
    )
    cfg.signal.use_volume_profile = False
    return cfg


@pytest.fixture
def paper() -> PaperConnector:
    """EURUSD paper venue at 1.1000 / 1.1001."""
    connector = PaperConnector(symbol="EURUSD", balance=10000.0)
    connector.set_tick(bid=1.1000, ask=1.1001, when=START)
    return connector


@pytest.fixture
def trap_connector(config) -> PaperConnector:
    """Index paper venue loaded with the short trap scenario."""
    connector = PaperConnector(
        symbol="US500",
        indicators=config.indicators,
        balance=10000.0,
        symbol_info=index_symbol(),
    )
    connector.spread = 0.1
    connector.set_bars(make_bars(short_trap_rows()))
    connector.set_indicators(make_snapshot())
    return connector
