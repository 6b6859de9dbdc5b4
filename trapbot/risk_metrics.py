"""
Performance Analytics Module
============================
Rolling performance over the most recent closed trades.

Implements:
- Win rate, average win / average loss
- Profit factor (gross profit / gross loss)
- Sharpe estimate (mean / sample std of per-trade profit, single pass)
- Maximum drawdown as a fraction of the running peak balance
- Recovery factor (gross profit / peak-to-trough amount)

Reporting only: nothing here feeds back into risk or signal logic.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, List, Sequence

import numpy as np
from loguru import logger

from .position_manager import PositionRecord


MAX_WINDOW = 20
RATIO_SENTINEL = 999.0      # Profit with no loss (or no drawdown)
VARIANCE_EPSILON = 1e-12


@dataclass
class PerformanceReport:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    sharpe: float = 0.0
    max_drawdown: float = 0.0           # Fraction of running peak balance
    max_drawdown_amount: float = 0.0
    recovery_factor: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)


def ratio_or_sentinel(numerator: float, denominator: float) -> float:
    """numerator / denominator, with the sentinel for x/0 (x > 0) and 0 for 0/0."""
    if denominator <= 0:
        return RATIO_SENTINEL if numerator > 0 else 0.0
    return numerator / denominator


def sharpe_estimate(returns: Sequence[float]) -> float:
    """Mean / sample standard deviation in one pass. Zero if variance is negligible."""
    n = 0
    total = 0.0
    total_sq = 0.0
    for r in returns:
        n += 1
        total += r
        total_sq += r * r

    if n < 2:
        return 0.0

    mean = total / n
    variance = (total_sq - n * mean * mean) / (n - 1)
    if variance <= VARIANCE_EPSILON:
        return 0.0
    return mean / math.sqrt(variance)


def drawdown_stats(profits: Sequence[float], starting_balance: float):
    """
    (max drawdown fraction, max peak-to-trough amount) of the balance path.
    """
    if len(profits) == 0:
        return 0.0, 0.0

    balance = starting_balance + np.cumsum(np.asarray(profits, dtype=float))
    balance = np.concatenate([[starting_balance], balance])
    running_peak = np.maximum.accumulate(balance)
    amounts = running_peak - balance

    with np.errstate(divide="ignore", invalid="ignore"):
        fractions = np.where(running_peak > 0, amounts / running_peak, 0.0)

    return float(fractions.max()), float(amounts.max())


class PerformanceAnalytics:
    """Derived statistics over the last N closed PositionRecords (N <= 20)."""

    def __init__(self, window: int = MAX_WINDOW):
        self.window = min(max(window, 1), MAX_WINDOW)

    def compute(self, records: List[PositionRecord], current_balance: float) -> PerformanceReport:
        """
        Args:
            records: Closed records, oldest first
            current_balance: Account balance now; the period's starting
                balance is derived by backing out the window's profits
        """
        closed = [r for r in records if r.is_closed][-self.window:]
        if not closed:
            return PerformanceReport()

        profits = [r.close.profit for r in closed]
        wins = [p for p in profits if p > 0]
        losses = [p for p in profits if p < 0]

        gross_profit = float(sum(wins))
        gross_loss = float(abs(sum(losses)))

        starting_balance = current_balance - sum(profits)
        max_dd, max_dd_amount = drawdown_stats(profits, starting_balance)

        report = PerformanceReport(
            trades=len(profits),
            wins=len(wins),
            losses=len(losses),
            win_rate=len(wins) / len(profits),
            gross_profit=gross_profit,
            gross_loss=gross_loss,
            profit_factor=ratio_or_sentinel(gross_profit, gross_loss),
            avg_win=gross_profit / len(wins) if wins else 0.0,
            avg_loss=gross_loss / len(losses) if losses else 0.0,
            sharpe=sharpe_estimate(profits),
            max_drawdown=max_dd,
            max_drawdown_amount=max_dd_amount,
            recovery_factor=ratio_or_sentinel(gross_profit, max_dd_amount),
        )
        logger.debug(f"Analytics over {report.trades} trades: PF={report.profit_factor:.2f} WR={report.win_rate:.0%}")
        return report

    @staticmethod
    def format_report(report: PerformanceReport) -> str:
        """Human-readable summary."""
        if report.trades == 0:
            return "No closed trades yet"

        return (
            f"PERFORMANCE (last {report.trades} trades)\n"
            f"{'=' * 40}\n"
            f"  Win Rate:       {report.win_rate:.1%} ({report.wins}W/{report.losses}L)\n"
            f"  Profit Factor:  {report.profit_factor:.2f}\n"
            f"  Avg Win/Loss:   ${report.avg_win:.2f} / ${report.avg_loss:.2f}\n"
            f"  Sharpe (trade): {report.sharpe:.2f}\n"
            f"  Max Drawdown:   {report.max_drawdown:.2%} (${report.max_drawdown_amount:.2f})\n"
            f"  Recovery:       {report.recovery_factor:.2f}\n"
            f"{'=' * 40}"
        )
