"""Entry Orchestrator - Bar-Close Entry Decisions
================================================

On every closed bar:
1. SignalEvaluator -> aligned direction and entry signal
2. PyramidGroup admission (max steps, break-even gate, distance)
3. Stop/target placement and RiskSizer volume
4. Market order through the execution client, then lock of the
   preceding step

Each order carries the strategy label (label + symbol) and a step tag
in its comment ("Initial_Entry" / "Pyramid_Step_N") so that open
positions can be restored after a restart.

Author: PyramidTrend Team
"""
import re
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from ..analysis.signal_evaluator import SignalEvaluator
from ..data.models import AccountState, Direction, InstrumentSpec, MarketSnapshot
from .errors import ExecutionFailed, ReconciliationAmbiguous, SizingBelowMinimum
from .position_ledger import PositionLedger, TrackedStep
from .protection_engine import ProtectionEngine
from .pyramid_group import PyramidGroup, can_admit_step
from .risk_sizer import RiskSizer


INITIAL_ENTRY_TAG = "Initial_Entry"
PYRAMID_STEP_PREFIX = "Pyramid_Step_"

_STEP_PATTERN = re.compile(r"Pyramid_Step_(\d+)")


def step_comment(step_index: int) -> str:
    """Order comment for a step"""
    if step_index == 0:
        return INITIAL_ENTRY_TAG
    return f"{PYRAMID_STEP_PREFIX}{step_index}"


def parse_step_comment(comment: Optional[str]) -> int:
    """Step index encoded in an order comment

    Raises:
        ReconciliationAmbiguous: if the comment carries no step tag
    """
    comment = comment or ""
    if comment.startswith(INITIAL_ENTRY_TAG):
        return 0
    match = _STEP_PATTERN.search(comment)
    if match is None:
        raise ReconciliationAmbiguous(comment)
    return int(match.group(1))


@dataclass
class EntryRequest:
    """A sized, admitted entry ready for execution"""
    symbol: str
    direction: Direction
    step_index: int
    entry_price: float
    volume: float
    stop: float
    target: float
    label: str
    comment: str
    risk_amount: float = 0.0


class EntryOrchestrator:
    """Signal -> admission -> sizing -> order"""

    def __init__(
        self,
        instrument: InstrumentSpec,
        execution,
        evaluator: SignalEvaluator = None,
        sizer: RiskSizer = None,
        protection: ProtectionEngine = None,
        risk_percent: float = 1.0,
        pyramid_distance_pips: float = 120.0,
        max_steps: int = 3,
        label: str = "PyramidTrend_"
    ):
        self.instrument = instrument
        self.execution = execution
        self.evaluator = evaluator or SignalEvaluator()
        self.sizer = sizer or RiskSizer()
        self.protection = protection or ProtectionEngine(instrument, execution)
        self.risk_percent = risk_percent
        self.pyramid_distance_pips = pyramid_distance_pips
        self.max_steps = max_steps
        self.label = label

    @property
    def strategy_label(self) -> str:
        """Position label shared by all steps of this instrument"""
        return f"{self.label}{self.instrument.symbol}"

    def plan(
        self,
        ledger: PositionLedger,
        snapshot: MarketSnapshot,
        account: AccountState
    ) -> Optional[EntryRequest]:
        """Decide whether the closed bar produces an entry

        Returns:
            EntryRequest, or None if no entry should be made
        """
        reading = self.evaluator.evaluate(snapshot)
        direction = reading.aligned_direction
        if direction is None:
            return None

        if not reading.entry_signal:
            logger.debug(
                f"{self.instrument.symbol} {direction.value} aligned but no entry signal "
                f"(pullback={reading.pullback_touch}, momentum={reading.momentum_ok})"
            )
            return None

        return self.plan_direction(ledger, snapshot, account, direction)

    def plan_direction(
        self,
        ledger: PositionLedger,
        snapshot: MarketSnapshot,
        account: AccountState,
        direction: Direction
    ) -> Optional[EntryRequest]:
        """Admission, levels and sizing for an entry in a given direction"""
        spec = self.instrument
        entry_price = _entry_price(direction, snapshot)

        group = PyramidGroup.from_ledger(ledger, direction)
        admission = can_admit_step(
            group,
            direction,
            entry_price,
            spec.price_distance(self.pyramid_distance_pips),
            self.max_steps
        )
        if not admission.allowed:
            return None

        stop, target = self.sizer.initial_levels(
            direction,
            entry_price,
            snapshot.atr,
            spec,
            swing_low=snapshot.swing_low,
            swing_high=snapshot.swing_high
        )

        try:
            sizing = self.sizer.size_for(spec, account, self.risk_percent, abs(entry_price - stop))
        except SizingBelowMinimum as e:
            logger.info(f"[SKIP] {spec.symbol} {direction.value}: {e}")
            return None

        step_index = group.next_step_index
        return EntryRequest(
            symbol=spec.symbol,
            direction=direction,
            step_index=step_index,
            entry_price=entry_price,
            volume=sizing.volume,
            stop=stop,
            target=target,
            label=self.strategy_label,
            comment=step_comment(step_index),
            risk_amount=sizing.risk_amount
        )

    def execute(self, ledger: PositionLedger, request: EntryRequest) -> Optional[TrackedStep]:
        """Send the order, track the new step and lock the preceding one

        Returns:
            The new TrackedStep, or None if the order was rejected
        """
        try:
            result = self.execution.open(
                request.symbol,
                request.direction,
                request.volume,
                request.stop,
                request.target,
                request.label,
                request.comment
            )
        except ExecutionFailed as e:
            logger.warning(f"[ENTRY] {request.symbol} {request.direction.value} {request.comment} failed: {e}")
            return None

        step = ledger.add(TrackedStep(
            trade_id=result.trade_id,
            symbol=request.symbol,
            direction=request.direction,
            step_index=request.step_index,
            entry_price=result.fill_price,
            volume=result.volume,
            current_stop=request.stop,
            current_target=request.target
        ))

        logger.info(
            f"[ENTRY] {request.direction.value} {request.symbol} {request.comment} "
            f"vol={result.volume} @ {result.fill_price:.5f} "
            f"SL={request.stop:.5f} TP={request.target:.5f} risk={request.risk_amount:.2f}"
        )

        if step.step_index > 0:
            group = PyramidGroup.from_ledger(ledger, step.direction)
            self.protection.lock_previous_steps(group, step)

        return step

    def on_bar_close(
        self,
        ledger: PositionLedger,
        snapshot: MarketSnapshot,
        account: AccountState
    ) -> Optional[TrackedStep]:
        """Plan and execute at most one entry for the closed bar"""
        request = self.plan(ledger, snapshot, account)
        if request is None:
            return None
        return self.execute(ledger, request)


def _entry_price(direction: Direction, snapshot: MarketSnapshot) -> float:
    if direction is Direction.LONG and snapshot.ask is not None:
        return snapshot.ask
    if direction is Direction.SHORT and snapshot.bid is not None:
        return snapshot.bid
    return snapshot.close
