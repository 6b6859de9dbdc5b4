"""
Position Lifecycle Manager
==========================
Pending -> Open -> (Trailing)* -> Closed

- Entry: stop beyond the trapped zone (ATR buffer), target from reward ratio
- Trailing stop: ATR-based, only ever tightens
- Closure detection for tracked tickets that disappear from the venue
- Reconciliation of profit/pips from deal history
- Best-effort stop/target attribution (heuristic, see infer_exit)
- Adoption of positions found open at start-up
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger

from .adaptive_risk import AdaptiveRiskController, AdaptiveState
from .config import RiskConfig, TrailingConfig
from .liquidity_detector import TrapSignal
from .mt5_connector import (
    AccountInfo,
    BrokerConnector,
    DealRecord,
    OrderRequest,
    PositionSide,
    SymbolInfo,
    TickData,
    VenuePosition,
)
from .regime_detector import TrendRegime
from .risk_engine import PositionSizer


# Close price within this many pips of the target/stop counts as a hit.
# Attribution is inferred from prices, not reported by the venue.
ATTRIBUTION_TOLERANCE_PIPS = 2.0


@dataclass(frozen=True)
class CloseFacts:
    """Everything learned at closure. Assigned once, never partially."""
    close_time: datetime
    close_price: float
    profit: float
    pips: float
    stop_hit: bool
    target_hit: bool
    needs_attention: bool = False


@dataclass
class PositionRecord:
    """One open or historically closed position."""
    ticket: int
    side: PositionSide
    open_time: datetime
    entry_price: float
    initial_sl: float
    initial_tp: float
    volume: float

    # Snapshot at open
    regime: TrendRegime
    risk_percent: float
    adaptive_tier: int

    # Trailing state
    last_sl: float = 0.0
    trailing_active: bool = False

    close: Optional[CloseFacts] = None
    adopted: bool = False

    @property
    def is_closed(self) -> bool:
        return self.close is not None

    def to_row(self) -> Dict:
        """Flat dict for reports."""
        row = {
            "ticket": self.ticket,
            "side": self.side.value,
            "open_time": self.open_time.isoformat(),
            "entry_price": self.entry_price,
            "initial_sl": self.initial_sl,
            "initial_tp": self.initial_tp,
            "volume": self.volume,
            "regime": self.regime.value,
            "risk_percent": self.risk_percent,
            "adaptive_tier": self.adaptive_tier,
            "last_sl": self.last_sl,
            "trailing_active": self.trailing_active,
            "adopted": self.adopted,
        }
        facts = self.close
        row.update({
            "close_time": facts.close_time.isoformat() if facts else "",
            "close_price": facts.close_price if facts else "",
            "profit": facts.profit if facts else "",
            "pips": facts.pips if facts else "",
            "stop_hit": facts.stop_hit if facts else "",
            "target_hit": facts.target_hit if facts else "",
            "needs_attention": facts.needs_attention if facts else "",
        })
        return row


@dataclass
class EntryPlan:
    """Prices computed for a signal before sizing."""
    side: PositionSide
    entry: float
    sl: float
    tp: float


def infer_exit(
    side: PositionSide,
    close_price: float,
    profit: float,
    target: float,
    stop: float,
    trailing_active: bool,
    tolerance: float,
) -> Tuple[bool, bool]:
    """
    Best-effort (stop_hit, target_hit) from where the position closed.

    1. close within tolerance of the target -> target
    2. close within tolerance of the last known stop -> stop
    3. otherwise use the profit sign: a loss beyond the stop, or a trailed
       stop giving back into profit, counts as a stop; a profit beyond the
       target counts as a target. Anything else is a manual/other close.
    """
    if target > 0 and abs(close_price - target) <= tolerance:
        return False, True
    if stop > 0 and abs(close_price - stop) <= tolerance:
        return True, False

    sign = side.sign
    if profit < 0 and stop > 0 and (close_price - stop) * sign <= 0:
        return True, False
    if profit > 0:
        if target > 0 and (close_price - target) * sign >= 0:
            return False, True
        if trailing_active and stop > 0 and (close_price - stop) * sign <= tolerance:
            return True, False
    return False, False


class PositionLifecycleManager:
    """
    Owns the position store (ticket -> record) and the tracked-ticket set.

    Single writer: every mutation happens inside an engine cycle.
    """

    def __init__(
        self,
        connector: BrokerConnector,
        controller: AdaptiveRiskController,
        sizer: PositionSizer,
        risk: RiskConfig,
        trailing: TrailingConfig,
    ):
        self.connector = connector
        self.controller = controller
        self.sizer = sizer
        self.risk = risk
        self.trailing = trailing

        self._open: Dict[int, PositionRecord] = {}
        self._closed: List[PositionRecord] = []
        self._tracked: Set[int] = set()

    # === Queries ===

    @property
    def tracked_tickets(self) -> Set[int]:
        return set(self._tracked)

    @property
    def open_count(self) -> int:
        return len(self._open)

    def get_record(self, ticket: int) -> Optional[PositionRecord]:
        return self._open.get(ticket)

    def open_records(self) -> List[PositionRecord]:
        return list(self._open.values())

    def closed_records(self) -> List[PositionRecord]:
        return list(self._closed)

    # === Entry ===

    def check_entry_gates(self, atr: float, avg_bar_size: float) -> Tuple[bool, str]:
        """Position limit and extreme-volatility gates (pause is checked by the controller)."""
        if self.open_count >= self.risk.max_positions:
            return False, f"Maximum positions reached: {self.open_count}"
        if avg_bar_size > 0 and atr > avg_bar_size * self.risk.extreme_volatility_multiplier:
            return False, f"Extreme volatility: ATR {atr:.5f} vs avg bar {avg_bar_size:.5f}"
        return True, "OK"

    def plan_entry(
        self,
        signal: TrapSignal,
        tick: TickData,
        atr: float,
        symbol: SymbolInfo,
    ) -> EntryPlan:
        """Stop beyond the zone plus ATR buffer, target at reward ratio; both respect the minimum distance."""
        side = signal.side
        sign = side.sign
        entry = tick.ask if side is PositionSide.LONG else tick.bid
        min_distance = symbol.min_stop_distance

        sl = signal.zone_level - sign * atr * self.risk.sl_atr_multiplier
        sl_distance = (entry - sl) * sign
        if sl_distance < min_distance or sl_distance <= 0:
            sl_distance = max(min_distance, symbol.point * 10)
            sl = entry - sign * sl_distance

        tp_distance = max(sl_distance * self.risk.reward_ratio, min_distance)
        tp = entry + sign * tp_distance

        return EntryPlan(
            side=side,
            entry=entry,
            sl=round(sl, symbol.digits),
            tp=round(tp, symbol.digits),
        )

    def open_position(
        self,
        signal: TrapSignal,
        tick: TickData,
        atr: float,
        regime: TrendRegime,
        account: AccountInfo,
        symbol: SymbolInfo,
        state: AdaptiveState,
    ) -> Optional[PositionRecord]:
        """
        Size, submit and record a new position.

        Returns:
            The new record, or None if sizing failed or the venue rejected
        """
        plan = self.plan_entry(signal, tick, atr, symbol)

        sizing = self.sizer.calculate(
            entry_price=plan.entry,
            stop_price=plan.sl,
            account=account,
            symbol=symbol,
            risk_percent=state.current_risk_percent,
        )
        if not sizing.approved:
            logger.warning(f"Entry skipped: {sizing.rejection_reason}")
            return None

        result = self.connector.submit_order(OrderRequest(
            side=plan.side,
            volume=sizing.volume,
            sl=plan.sl,
            tp=plan.tp,
        ))
        if not result.success or result.ticket is None:
            logger.error(f"Order rejected: {result.comment} (retcode={result.retcode})")
            return None

        if result.ticket in self._open:
            logger.error(f"Venue reused open ticket #{result.ticket}, fill not recorded")
            return None

        sl = result.sl or plan.sl
        record = PositionRecord(
            ticket=result.ticket,
            side=plan.side,
            open_time=tick.time,
            entry_price=result.price or plan.entry,
            initial_sl=sl,
            initial_tp=result.tp or plan.tp,
            volume=result.volume or sizing.volume,
            regime=regime,
            risk_percent=state.current_risk_percent,
            adaptive_tier=state.tier,
            last_sl=sl,
        )
        self._open[record.ticket] = record
        self._tracked.add(record.ticket)
        self.controller.record_entry()

        logger.info(
            f"OPENED #{record.ticket} {record.side.value.upper()} {record.volume} @ {record.entry_price} "
            f"SL={record.initial_sl} TP={record.initial_tp} risk={record.risk_percent:.2f}% "
            f"({signal.reason})"
        )
        return record

    # === Trailing ===

    def apply_trailing(self, tick: TickData, atr: float, symbol: SymbolInfo) -> int:
        """
        Trail every open position whose excursion reached the start level.

        Returns:
            Number of stops moved
        """
        if not self.trailing.enabled or atr <= 0:
            return 0

        moved = 0
        for record in list(self._open.values()):
            new_sl = self._propose_trailing_stop(record, tick, atr, symbol)
            if new_sl is None:
                continue

            if not self.connector.modify_stop(record.ticket, new_sl, record.initial_tp):
                logger.error(f"Trailing SL #{record.ticket} to {new_sl} rejected by venue")
                continue

            logger.info(f"TRAILED SL #{record.ticket}: {record.last_sl} -> {new_sl}")
            record.last_sl = new_sl
            record.trailing_active = True
            moved += 1

        return moved

    def _propose_trailing_stop(
        self,
        record: PositionRecord,
        tick: TickData,
        atr: float,
        symbol: SymbolInfo,
    ) -> Optional[float]:
        sign = record.side.sign
        price = tick.bid if record.side is PositionSide.LONG else tick.ask

        initial_risk = abs(record.entry_price - record.initial_sl)
        if initial_risk <= 0:
            return None

        excursion = (price - record.entry_price) * sign
        if excursion < initial_risk * self.trailing.start_multiplier:
            return None

        new_sl = round(price - sign * atr * self.trailing.step_atr_multiplier, symbol.digits)

        tightens = record.last_sl <= 0 or (new_sl - record.last_sl) * sign > 0
        if not tightens:
            return None
        if (price - new_sl) * sign < symbol.min_stop_distance:
            return None
        return new_sl

    # === Closure ===

    def detect_closed_positions(self, tick: Optional[TickData], symbol: SymbolInfo) -> List[PositionRecord]:
        """Close out every tracked ticket the venue no longer reports as open."""
        closed = []
        for ticket in sorted(self._tracked):
            if self.connector.is_position_open(ticket):
                continue
            record = self._open.get(ticket)
            if record is None:
                logger.warning(f"Tracked ticket #{ticket} has no record, dropping it")
                self._tracked.discard(ticket)
                continue
            closed.append(self.close_position(record, tick, symbol))
        return closed

    def close_position(
        self,
        record: PositionRecord,
        tick: Optional[TickData],
        symbol: SymbolInfo,
    ) -> PositionRecord:
        """Reconcile a vanished position and feed the outcome back."""
        deals = self.connector.get_position_deals(record.ticket)
        facts = self.reconcile(record, deals, tick, symbol)

        record.close = facts
        del self._open[record.ticket]
        self._tracked.discard(record.ticket)
        self._closed.append(record)

        if facts.needs_attention:
            logger.warning(
                f"CLOSED #{record.ticket} without execution history, "
                f"recorded as zero profit - needs attention"
            )
        else:
            outcome = "TP" if facts.target_hit else "SL" if facts.stop_hit else "OTHER"
            logger.info(
                f"CLOSED #{record.ticket} @ {facts.close_price} profit=${facts.profit:.2f} "
                f"pips={facts.pips:.1f} exit={outcome}"
            )
            self.controller.record_trade_result(facts.profit)

        return record

    def reconcile(
        self,
        record: PositionRecord,
        deals: List[DealRecord],
        tick: Optional[TickData],
        symbol: SymbolInfo,
    ) -> CloseFacts:
        """Realized profit and volume-weighted pips from the deals of a position."""
        pip = symbol.pip_size
        exits = [d for d in deals if d.is_exit]

        if not exits:
            if tick is not None:
                price = tick.bid if record.side is PositionSide.LONG else tick.ask
                when = tick.time
            else:
                price = record.last_sl
                when = datetime.now(timezone.utc)
            return CloseFacts(
                close_time=when,
                close_price=price,
                profit=0.0,
                pips=0.0,
                stop_hit=False,
                target_hit=False,
                needs_attention=True,
            )

        profit = sum(d.profit + d.commission + d.swap for d in deals)

        sign = record.side.sign
        exit_volume = sum(d.volume for d in exits)
        if exit_volume > 0:
            pips = sum(
                (d.price - record.entry_price) * sign / pip * d.volume for d in exits
            ) / exit_volume
        else:
            pips = 0.0

        last_exit = max(exits, key=lambda d: d.time)
        stop_hit, target_hit = infer_exit(
            side=record.side,
            close_price=last_exit.price,
            profit=profit,
            target=record.initial_tp,
            stop=record.last_sl,
            trailing_active=record.trailing_active,
            tolerance=ATTRIBUTION_TOLERANCE_PIPS * pip,
        )

        return CloseFacts(
            close_time=last_exit.time,
            close_price=last_exit.price,
            profit=round(profit, 2),
            pips=round(pips, 1),
            stop_hit=stop_hit,
            target_hit=target_hit,
        )

    # === Start-up / self-healing ===

    def adopt_open_positions(
        self,
        positions: List[VenuePosition],
        regime: TrendRegime,
        state: AdaptiveState,
        base_risk_percent: float,
    ) -> List[PositionRecord]:
        """
        Track live positions this process has no record of.

        Regime and risk at open are not recoverable; current regime and the
        base risk are stored instead.
        """
        adopted = []
        for pos in positions:
            if pos.ticket in self._open:
                continue
            record = PositionRecord(
                ticket=pos.ticket,
                side=pos.side,
                open_time=pos.time,
                entry_price=pos.price_open,
                initial_sl=pos.sl,
                initial_tp=pos.tp,
                volume=pos.volume,
                regime=regime,
                risk_percent=base_risk_percent,
                adaptive_tier=state.tier,
                last_sl=pos.sl,
                adopted=True,
            )
            self._open[record.ticket] = record
            self._tracked.add(record.ticket)
            adopted.append(record)
            logger.warning(
                f"Adopted existing position #{pos.ticket} {pos.side.value.upper()} "
                f"{pos.volume} @ {pos.price_open} (open-time snapshot approximated)"
            )
        return adopted

    def reconcile_tracking(self) -> bool:
        """
        Restore tracked set == open records. Returns True if drift was found.
        """
        expected = set(self._open)
        if self._tracked == expected:
            return False

        missing = expected - self._tracked
        stale = self._tracked - expected
        logger.warning(
            f"Tracked set drifted: missing={sorted(missing)} stale={sorted(stale)}, restoring"
        )
        self._tracked = expected
        return True
