"""Strategy Runtime - Per-Instrument Event Loop
==============================================

Owns the PositionLedger of one instrument and dispatches market events
to the engine components, strictly one at a time:

    start()              -> rebuild ledger from broker (reversal first)
    on_tick(tick)        -> ProtectionEngine (after the sync grace period)
    on_bar_close(snap)   -> ReversalGuard, EntryOrchestrator, target trailing
    on_position_closed() -> ledger removal

Instruments never share a runtime; run one per symbol. With trading
disabled, entry signals are only logged and no reversal closes are sent.

Author: PyramidTrend Team
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Hashable, List, Optional

from loguru import logger

from ..analysis.signal_evaluator import SignalEvaluator
from ..data.models import AccountState, Direction, InstrumentSpec, MarketSnapshot, Tick
from .entry_orchestrator import EntryOrchestrator, EntryRequest
from .errors import ExecutionFailed
from .position_ledger import PositionLedger, TrackedStep
from .protection_engine import (
    BreakEvenBufferMode,
    ProtectionAction,
    ProtectionEngine,
    ProtectionParams,
)
from .pyramid_group import PyramidGroup
from .reconciler import ReconciliationReport, Reconciler
from .reversal_guard import ReversalGuard
from .risk_sizer import RiskSizer


class RuntimeState(Enum):
    """Runtime state"""
    IDLE = "idle"
    SYNCING = "syncing"
    RUNNING = "running"


@dataclass
class RuntimeStats:
    """Runtime statistics"""
    start_time: datetime = None
    ticks: int = 0
    bars: int = 0
    entries: int = 0
    reversal_closes: int = 0
    closed: int = 0


@dataclass
class BarCloseResult:
    """What happened on a bar close"""
    reversal_closed: List[Hashable] = field(default_factory=list)
    entered: Optional[TrackedStep] = None
    signal: Optional[EntryRequest] = None
    target_actions: List[ProtectionAction] = field(default_factory=list)


class StrategyRuntime:
    """Single-instrument pyramiding strategy"""

    def __init__(
        self,
        instrument: InstrumentSpec,
        execution,
        evaluator: SignalEvaluator = None,
        orchestrator: EntryOrchestrator = None,
        protection: ProtectionEngine = None,
        guard: ReversalGuard = None,
        reconciler: Reconciler = None,
        ledger: PositionLedger = None,
        ticks_to_wait: int = 5,
        trading_enabled: bool = True
    ):
        """Initialize Strategy Runtime

        Args:
            instrument: Broker properties of the traded symbol
            execution: ExecutionClient for this instrument
            evaluator: Shared signal evaluator
            orchestrator: Entry decisions
            protection: Tick protection
            guard: Reversal detection
            reconciler: Startup ledger rebuild
            ledger: Ledger to own (a fresh one by default)
            ticks_to_wait: Ticks ignored after start before protection runs
            trading_enabled: False logs entry signals without sending orders
        """
        self.instrument = instrument
        self.execution = execution
        self.evaluator = evaluator or SignalEvaluator()
        self.protection = protection or ProtectionEngine(instrument, execution)
        self.guard = guard or ReversalGuard(self.evaluator)
        self.orchestrator = orchestrator or EntryOrchestrator(
            instrument, execution, evaluator=self.evaluator, protection=self.protection
        )
        self.reconciler = reconciler or Reconciler(
            instrument,
            execution,
            sizer=self.orchestrator.sizer,
            guard=self.guard,
            remove_target_after_pyramid=self.protection.params.remove_target_after_pyramid
        )
        self.ledger = ledger if ledger is not None else PositionLedger(instrument.symbol)
        self.ticks_to_wait = ticks_to_wait
        self.trading_enabled = trading_enabled

        self.state = RuntimeState.IDLE
        self.stats = RuntimeStats()
        self._sync_ticks = 0

    @classmethod
    def from_settings(
        cls,
        instrument: InstrumentSpec,
        execution,
        settings,
        ledger: PositionLedger = None
    ) -> "StrategyRuntime":
        """Build a runtime from the loaded configuration"""
        protection_cfg = settings.protection
        params = ProtectionParams(
            trailing_enabled=protection_cfg.trailing_enabled,
            trailing_atr_multiplier=protection_cfg.trailing_atr_multiplier,
            trailing_step_pips=protection_cfg.trailing_step_pips,
            break_even_atr_multiplier=protection_cfg.break_even_atr_multiplier,
            break_even_buffer_pips=protection_cfg.break_even_buffer_pips,
            break_even_buffer_mode=BreakEvenBufferMode(protection_cfg.break_even_buffer_mode),
            commission_pips=protection_cfg.commission_pips,
            partial_tp_percent=protection_cfg.partial_tp_percent,
            remove_target_after_pyramid=protection_cfg.remove_target_after_pyramid,
            trail_target_on_bar_close=protection_cfg.trail_target_on_bar_close,
            tp_trail_atr_multiplier=protection_cfg.tp_trail_atr_multiplier
        )
        evaluator = SignalEvaluator()
        protection = ProtectionEngine(instrument, execution, params)
        sizer = RiskSizer(
            sl_atr_multiplier=settings.risk.sl_atr_multiplier,
            tp_atr_multiplier=settings.risk.tp_atr_multiplier
        )
        orchestrator = EntryOrchestrator(
            instrument,
            execution,
            evaluator=evaluator,
            sizer=sizer,
            protection=protection,
            risk_percent=settings.risk.risk_percent,
            pyramid_distance_pips=settings.pyramid.distance_pips,
            max_steps=settings.pyramid.max_steps,
            label=settings.runtime.label
        )
        return cls(
            instrument,
            execution,
            evaluator=evaluator,
            orchestrator=orchestrator,
            protection=protection,
            ledger=ledger,
            ticks_to_wait=settings.runtime.ticks_to_wait,
            trading_enabled=settings.trading.enabled
        )

    @property
    def symbol(self) -> str:
        return self.instrument.symbol

    @property
    def is_synced(self) -> bool:
        return self.state is RuntimeState.RUNNING

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, snapshot: Optional[MarketSnapshot] = None) -> Optional[ReconciliationReport]:
        """Rebuild the ledger from the broker and enter the sync grace period

        Returns:
            ReconciliationReport, or None if broker positions could not be
            listed (the runtime stays idle and start may be retried)
        """
        try:
            report = self.reconciler.reconcile(
                self.ledger,
                self.orchestrator.strategy_label,
                snapshot if self.trading_enabled else None
            )
        except ExecutionFailed as e:
            logger.error(f"{self.symbol}: cannot restore open positions: {e}")
            return None

        self.stats = RuntimeStats(start_time=datetime.now(timezone.utc))
        self.stats.reversal_closes += len(report.closed)
        self._sync_ticks = 0

        if self.ticks_to_wait > 0:
            self.state = RuntimeState.SYNCING
        else:
            self.state = RuntimeState.RUNNING

        logger.info(
            f"[START] {self.symbol} started with {len(self.ledger)} tracked steps. "
            f"Waiting {self.ticks_to_wait} ticks to sync."
        )
        if snapshot is not None:
            self.log_conditions("startup", snapshot)
        return report

    def stop(self):
        self.state = RuntimeState.IDLE
        logger.info(f"[STOP] {self.symbol} stopped")

    # =========================================================================
    # EVENTS
    # =========================================================================

    def on_tick(self, tick: Tick) -> List[ProtectionAction]:
        """Tick-driven protection"""
        if self.state is RuntimeState.IDLE:
            return []

        self.stats.ticks += 1

        if self.state is RuntimeState.SYNCING:
            self._sync_ticks += 1
            if self._sync_ticks >= self.ticks_to_wait:
                self.state = RuntimeState.RUNNING
                logger.info(f"[DATA SYNC] {self.symbol} position data synchronized.")
            return []

        return self.protection.evaluate(self.ledger, tick)

    def on_bar_close(self, snapshot: MarketSnapshot, account: AccountState) -> BarCloseResult:
        """Reversal check, entry evaluation and target trailing for a closed bar"""
        result = BarCloseResult()
        if self.state is RuntimeState.IDLE:
            logger.debug(f"{self.symbol}: bar close ignored, runtime not started")
            return result

        self.stats.bars += 1

        if self.trading_enabled:
            # Reversal first so a freed slot can take a new signal on this bar
            result.reversal_closed = self.guard.check(self.ledger, snapshot, self.execution)
            self.stats.reversal_closes += len(result.reversal_closed)

            result.entered = self.orchestrator.on_bar_close(self.ledger, snapshot, account)
            if result.entered is not None:
                self.stats.entries += 1
        else:
            result.signal = self.orchestrator.plan(self.ledger, snapshot, account)
            if result.signal is not None:
                request = result.signal
                logger.info(
                    f"[SIGNAL ONLY] {self.symbol} {request.direction.value} step {request.step_index} "
                    f"{request.volume} @ {request.entry_price:.5f} SL {request.stop:.5f} "
                    f"TP {request.target:.5f} (trading disabled)"
                )

        if self.protection.params.trail_target_on_bar_close:
            for direction in (Direction.LONG, Direction.SHORT):
                group = PyramidGroup.from_ledger(self.ledger, direction)
                if not group.steps:
                    continue
                price = _close_price(direction, snapshot)
                result.target_actions.extend(
                    self.protection.trail_targets(group, price, snapshot.atr)
                )

        self.log_conditions("bar_closed", snapshot)
        return result

    def on_position_closed(self, trade_id: Hashable, reason: str = "") -> Optional[TrackedStep]:
        """Broker reported a position closed (by any cause)"""
        step = self.ledger.remove(trade_id)
        if step is not None:
            self.stats.closed += 1
            logger.info(
                f"[CLOSED] Position {trade_id} ({step.direction.value} step {step.step_index}) "
                f"removed from tracking{': ' + reason if reason else ''}"
            )
        return step

    def log_conditions(self, event: str, snapshot: MarketSnapshot):
        reading = self.evaluator.evaluate(snapshot)
        logger.info(f"[{event.upper()}] {self.symbol} {self.evaluator.describe(reading, snapshot)}")

    def get_status(self) -> dict:
        """Runtime status summary"""
        return {
            'symbol': self.symbol,
            'state': self.state.value,
            'steps': [s.to_dict() for s in self.ledger.steps()],
            'ticks': self.stats.ticks,
            'bars': self.stats.bars,
            'entries': self.stats.entries,
            'reversal_closes': self.stats.reversal_closes,
            'closed': self.stats.closed,
        }


def _close_price(direction: Direction, snapshot: MarketSnapshot) -> float:
    if direction is Direction.LONG and snapshot.bid is not None:
        return snapshot.bid
    if direction is Direction.SHORT and snapshot.ask is not None:
        return snapshot.ask
    return snapshot.close
