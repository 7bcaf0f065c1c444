"""Startup Reconciliation
=========================

Rebuilds a PositionLedger from the broker's open positions on every
(re)start:

1. Positions reversed against the current trend are closed first
2. Step index parsed from the order comment (unparseable -> step 0)
3. Colliding step indices within a direction are bumped to stay unique
4. Break-even inferred from a stop beyond entry, lock inferred from a
   stop sitting on the next higher step's entry
5. Missing stop/target derived from ATR and written back to the broker

Author: PyramidTrend Team
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Hashable, List, Optional

from loguru import logger

from ..data.models import Direction, InstrumentSpec, MarketSnapshot
from .entry_orchestrator import parse_step_comment
from .errors import ExecutionFailed, ReconciliationAmbiguous
from .execution import TradeRecord
from .position_ledger import PositionLedger, TrackedStep
from .pyramid_group import PRICE_EPSILON
from .reversal_guard import ReversalGuard
from .risk_sizer import RiskSizer


FALLBACK_ATR_PIPS = 10.0


@dataclass
class ReconciliationReport:
    """Outcome of a ledger rebuild"""
    restored: List[Hashable] = field(default_factory=list)
    closed: List[Hashable] = field(default_factory=list)
    ambiguous: List[Hashable] = field(default_factory=list)
    levels_written: List[Hashable] = field(default_factory=list)


class Reconciler:
    """Restores tracked steps from broker state"""

    def __init__(
        self,
        instrument: InstrumentSpec,
        execution,
        sizer: RiskSizer = None,
        guard: ReversalGuard = None,
        remove_target_after_pyramid: bool = True
    ):
        self.instrument = instrument
        self.execution = execution
        self.sizer = sizer or RiskSizer()
        self.guard = guard or ReversalGuard()
        self.remove_target_after_pyramid = remove_target_after_pyramid

    def reconcile(
        self,
        ledger: PositionLedger,
        label: str,
        snapshot: Optional[MarketSnapshot] = None
    ) -> ReconciliationReport:
        """Rebuild the ledger from open broker positions

        Args:
            ledger: Ledger to rebuild (cleared first)
            label: Strategy label the positions were opened with
            snapshot: Current market state; without it no reversal check
                is made and the fallback ATR is used

        Returns:
            ReconciliationReport

        Raises:
            ExecutionFailed: if open positions cannot be listed
        """
        report = ReconciliationReport()
        records = [
            r for r in self.execution.list_open(label, self.instrument.symbol)
            if r.symbol == self.instrument.symbol
        ]
        ledger.clear()

        kept = []
        for record in records:
            if snapshot is not None and self._close_if_reversed(record, snapshot):
                report.closed.append(record.trade_id)
                continue
            kept.append(record)

        atr = snapshot.atr if snapshot is not None and snapshot.atr > 0 else 0.0
        if atr <= 0:
            atr = self.instrument.price_distance(FALLBACK_ATR_PIPS)

        for direction in (Direction.LONG, Direction.SHORT):
            same_side = [r for r in kept if r.direction is direction]
            if not same_side:
                continue
            steps = self._restore_group(same_side, report)
            top = steps[-1]
            for step in steps:
                self._fill_missing_levels(step, atr, report, restore_target=self._wants_target(step, top))
                ledger.add(step)
                report.restored.append(step.trade_id)
                logger.info(
                    f"[RESTORE] {direction.value} step {step.step_index} ({step.trade_id}) "
                    f"entry={step.entry_price:.5f} SL={_fmt(step.current_stop)} "
                    f"TP={_fmt(step.current_target)} be={step.break_even_applied} locked={step.locked}"
                )

        logger.info(
            f"[RESTORE] {len(report.restored)} positions restored, "
            f"{len(report.closed)} closed on reversal"
        )
        return report

    def _close_if_reversed(self, record: TradeRecord, snapshot: MarketSnapshot) -> bool:
        if not self.guard.reversal_against(record.direction, snapshot):
            return False
        try:
            self.execution.close(record.trade_id)
        except ExecutionFailed as e:
            logger.warning(f"[RESTORE] Reversal close of {record.trade_id} failed, keeping it: {e}")
            return False
        logger.info(f"[RESTORE] Position {record.trade_id} closed immediately - opposite trend detected")
        return True

    def _restore_group(
        self,
        records: List[TradeRecord],
        report: ReconciliationReport
    ) -> List[TrackedStep]:
        parsed = []
        for record in records:
            try:
                index = parse_step_comment(record.comment)
            except ReconciliationAmbiguous as e:
                logger.warning(f"[RESTORE] {record.trade_id}: {e}, treating as step 0")
                report.ambiguous.append(record.trade_id)
                index = 0
            parsed.append((index, record))

        oldest = datetime.min.replace(tzinfo=timezone.utc)
        parsed.sort(key=lambda item: (item[0], _as_utc(item[1].opened_at) or oldest))

        steps = []
        previous_index = -1
        for index, record in parsed:
            if index <= previous_index:
                logger.warning(
                    f"[RESTORE] {record.trade_id} step {index} collides, renumbered to {previous_index + 1}"
                )
                index = previous_index + 1
            previous_index = index
            steps.append(self._to_step(record, index))

        self._infer_locks(steps)
        return steps

    def _to_step(self, record: TradeRecord, index: int) -> TrackedStep:
        step = TrackedStep(
            trade_id=record.trade_id,
            symbol=record.symbol,
            direction=record.direction,
            step_index=index,
            entry_price=record.entry_price,
            volume=record.volume,
            current_stop=record.stop,
            current_target=record.target,
            opened_at=_as_utc(record.opened_at)
        )
        if record.stop is not None and record.direction.is_better(record.stop, record.entry_price):
            step.break_even_applied = True
        return step

    def _infer_locks(self, steps: List[TrackedStep]):
        tolerance = self.instrument.tick_size + PRICE_EPSILON
        for lower, higher in zip(steps, steps[1:]):
            if lower.current_stop is None:
                continue
            if abs(lower.current_stop - higher.entry_price) <= tolerance:
                lower.locked = True
                lower.locked_at_price = lower.current_stop
                lower.break_even_applied = True

    def _wants_target(self, step: TrackedStep, top: TrackedStep) -> bool:
        # Lower steps run without a target once a higher step exists
        return step is top or not self.remove_target_after_pyramid

    def _fill_missing_levels(
        self,
        step: TrackedStep,
        atr: float,
        report: ReconciliationReport,
        restore_target: bool = True
    ):
        missing_target = step.current_target is None and restore_target
        if step.current_stop is not None and not missing_target:
            return

        default_stop, default_target = self.sizer.default_levels(
            step.direction, step.entry_price, atr, self.instrument
        )
        written = False

        if step.current_stop is None:
            try:
                self.execution.modify_stop(step.trade_id, default_stop)
            except ExecutionFailed as e:
                logger.warning(f"[RESTORE] {step.trade_id} could not set SL {default_stop:.5f}: {e}")
            else:
                step.current_stop = default_stop
                step.last_trailing_stop = default_stop
                written = True

        if missing_target:
            try:
                self.execution.modify_target(step.trade_id, default_target)
            except ExecutionFailed as e:
                logger.warning(f"[RESTORE] {step.trade_id} could not set TP {default_target:.5f}: {e}")
            else:
                step.current_target = default_target
                written = True

        if written:
            report.levels_written.append(step.trade_id)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _fmt(price: Optional[float]) -> str:
    return "none" if price is None else f"{price:.5f}"
