"""
Trade Logger Module
===================
Report sink for closed positions.

Closed PositionRecords are appended to monthly CSV files
(data/trade_logs/trades_YYYY_MM.csv). Tickets already written are skipped,
so the same record list can be flushed repeatedly.
"""

import csv
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Set

from loguru import logger

from .position_manager import PositionRecord


FIELDNAMES = [
    "ticket", "side", "open_time", "entry_price", "initial_sl", "initial_tp",
    "volume", "regime", "risk_percent", "adaptive_tier", "last_sl",
    "trailing_active", "adopted", "close_time", "close_price", "profit",
    "pips", "stop_hit", "target_hit", "needs_attention",
]


class TradeLogger:
    """CSV trade report writer."""

    def __init__(self, data_dir: str = "data/trade_logs"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._written: Set[int] = set()
        self._trades_logged = 0

    def _get_monthly_file(self, when: datetime) -> Path:
        return self.data_dir / f"trades_{when.strftime('%Y_%m')}.csv"

    def _load_written(self, filepath: Path):
        """Remember tickets already present in an existing file."""
        if not filepath.exists():
            return
        with open(filepath, "r", newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                try:
                    self._written.add(int(row["ticket"]))
                except (KeyError, ValueError):
                    continue

    def write_report(self, records: Iterable[PositionRecord]) -> int:
        """
        Append closed records that have not been written yet.

        Returns:
            Number of rows written
        """
        pending: List[PositionRecord] = [
            r for r in records if r.is_closed and r.ticket not in self._written
        ]
        if not pending:
            return 0

        filepath = self._get_monthly_file(datetime.now(timezone.utc))
        self._load_written(filepath)
        pending = [r for r in pending if r.ticket not in self._written]
        if not pending:
            return 0

        new_file = not filepath.exists()
        try:
            with open(filepath, "a", newline="", encoding="utf-8") as f:
                writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
                if new_file:
                    writer.writeheader()
                for record in pending:
                    writer.writerow(record.to_row())
                    self._written.add(record.ticket)
        except OSError as e:
            logger.error(f"TradeLogger: could not write {filepath}: {e}")
            return 0

        self._trades_logged += len(pending)
        logger.info(f"TradeLogger: {len(pending)} trade(s) written to {filepath.name}")
        return len(pending)

    @property
    def trades_logged(self) -> int:
        return self._trades_logged
