"""
Unit Tests for Performance Analytics
====================================
Run with: pytest tests/test_risk_metrics.py -v
"""

import sys
from datetime import timedelta
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import math

import pytest

from conftest import START
from trapbot.mt5_connector import PositionSide
from trapbot.position_manager import CloseFacts, PositionRecord
from trapbot.regime_detector import TrendRegime
from trapbot.risk_metrics import (
    RATIO_SENTINEL,
    PerformanceAnalytics,
    drawdown_stats,
    ratio_or_sentinel,
    sharpe_estimate,
)


def closed_records(profits):
    records = []
    for i, profit in enumerate(profits):
        records.append(PositionRecord(
            ticket=100 + i,
            side=PositionSide.LONG,
            open_time=START + timedelta(hours=i),
            entry_price=1.1,
            initial_sl=1.099,
            initial_tp=1.102,
            volume=0.1,
            regime=TrendRegime.UP,
            risk_percent=1.0,
            adaptive_tier=0,
            close=CloseFacts(
                close_time=START + timedelta(hours=i, minutes=30),
                close_price=1.101,
                profit=profit,
                pips=0.0,
                stop_hit=profit < 0,
                target_hit=profit > 0,
            ),
        ))
    return records


class TestRatios:

    def test_sentinel_for_profit_without_loss(self):
        assert ratio_or_sentinel(50.0, 0.0) == RATIO_SENTINEL

    def test_zero_over_zero(self):
        assert ratio_or_sentinel(0.0, 0.0) == 0.0

    def test_plain_ratio(self):
        assert ratio_or_sentinel(200.0, 100.0) == pytest.approx(2.0)


class TestSharpe:

    def test_fewer_than_two(self):
        assert sharpe_estimate([]) == 0.0
        assert sharpe_estimate([10.0]) == 0.0

    def test_constant_returns(self):
        assert sharpe_estimate([5.0, 5.0, 5.0]) == 0.0

    def test_sample_estimate(self):
        assert sharpe_estimate([100, -50, 100, -50]) == pytest.approx(25 / math.sqrt(7500))


class TestDrawdown:

    def test_no_trades(self):
        assert drawdown_stats([], 1000.0) == (0.0, 0.0)

    def test_fraction_of_running_peak(self):
        fraction, amount = drawdown_stats([100, -50, 100, -50], 10000.0)
        assert amount == pytest.approx(50.0)
        assert fraction == pytest.approx(50.0 / 10100.0)

    def test_monotonic_gains(self):
        assert drawdown_stats([10, 20, 30], 1000.0) == (0.0, 0.0)


class TestPerformanceAnalytics:

    def test_empty(self):
        report = PerformanceAnalytics().compute([], 10000.0)
        assert report.trades == 0
        assert PerformanceAnalytics.format_report(report) == "No closed trades yet"

    def test_mixed_results(self):
        report = PerformanceAnalytics().compute(closed_records([100, -50, 100, -50]), 10100.0)

        assert report.trades == 4
        assert report.win_rate == pytest.approx(0.5)
        assert report.profit_factor == pytest.approx(2.0)
        assert report.avg_win == pytest.approx(100.0)
        assert report.avg_loss == pytest.approx(50.0)
        assert report.max_drawdown_amount == pytest.approx(50.0)
        assert report.max_drawdown == pytest.approx(50.0 / 10100.0)
        assert report.recovery_factor == pytest.approx(4.0)
        assert report.sharpe == pytest.approx(25 / math.sqrt(7500))

    def test_only_wins(self):
        report = PerformanceAnalytics().compute(closed_records([10, 20]), 1030.0)
        assert report.profit_factor == RATIO_SENTINEL
        assert report.recovery_factor == RATIO_SENTINEL
        assert report.win_rate == pytest.approx(1.0)

    def test_only_breakeven(self):
        report = PerformanceAnalytics().compute(closed_records([0.0, 0.0]), 1000.0)
        assert report.profit_factor == 0.0
        assert report.wins == 0
        assert report.losses == 0

    def test_window_capped_at_twenty(self):
        records = closed_records([-10.0] * 5 + [5.0] * 20)
        report = PerformanceAnalytics(window=50).compute(records, 10000.0)

        assert report.trades == 20
        assert report.losses == 0
        assert report.wins == 20

    def test_open_records_ignored(self):
        records = closed_records([10.0, -5.0])
        records[0].close = None
        report = PerformanceAnalytics().compute(records, 1000.0)
        assert report.trades == 1

    def test_format_report(self):
        report = PerformanceAnalytics().compute(closed_records([100, -50]), 10050.0)
        text = PerformanceAnalytics.format_report(report)
        assert "Profit Factor" in text
        assert "1W/1L" in text
