"""Trading Layer Module

Components:
- PositionLedger: Tracked pyramid steps per instrument
- PyramidGroup: Admission rules for a new step
- RiskSizer: Risk-percent position sizing
- ProtectionEngine: Break-even, trailing, partial TP and step lock
- ReversalGuard: Forced closure on trend reversal
- EntryOrchestrator: Bar-close entry decisions
- Reconciler: Ledger rebuild from broker state
- StrategyRuntime: Per-instrument event loop
"""

from .errors import AdmissionResult, ExecutionFailed, ReconciliationAmbiguous, SizingBelowMinimum
from .execution import ExecutionClient, OrderResult, TradeRecord
from .position_ledger import LedgerBook, PositionLedger, TrackedStep
from .pyramid_group import PyramidGroup, can_admit_step
from .risk_sizer import RiskSizer, SizingResult
from .protection_engine import BreakEvenBufferMode, ProtectionAction, ProtectionEngine, ProtectionParams
from .reversal_guard import ReversalGuard
from .entry_orchestrator import EntryOrchestrator, EntryRequest, parse_step_comment, step_comment
from .reconciler import ReconciliationReport, Reconciler
from .strategy_runtime import BarCloseResult, RuntimeState, StrategyRuntime

__all__ = [
    "AdmissionResult",
    "ExecutionFailed",
    "ReconciliationAmbiguous",
    "SizingBelowMinimum",
    "ExecutionClient",
    "OrderResult",
    "TradeRecord",
    "LedgerBook",
    "PositionLedger",
    "TrackedStep",
    "PyramidGroup",
    "can_admit_step",
    "RiskSizer",
    "SizingResult",
    "BreakEvenBufferMode",
    "ProtectionAction",
    "ProtectionEngine",
    "ProtectionParams",
    "ReversalGuard",
    "EntryOrchestrator",
    "EntryRequest",
    "parse_step_comment",
    "step_comment",
    "ReconciliationReport",
    "Reconciler",
    "BarCloseResult",
    "RuntimeState",
    "StrategyRuntime",
]
