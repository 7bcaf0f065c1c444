"""Position Ledger - Tracked Pyramid Steps
=========================================

Authoritative in-memory map from trade id to its tracked state for one
instrument. The ledger is the only mutable state shared by the engine
components; it is owned by the instrument's StrategyRuntime and rebuilt
from the broker on every (re)start.

Step state flags are monotonic:
- break_even_applied: False -> True, never reset
- locked: False -> True when a higher step freezes this step's stop

Author: PyramidTrend Team
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Hashable, Iterator, List, Optional

from loguru import logger

from ..data.models import Direction


@dataclass
class TrackedStep:
    """One pyramid leg"""
    trade_id: Hashable
    symbol: str
    direction: Direction
    step_index: int
    entry_price: float
    volume: float
    current_stop: Optional[float] = None
    current_target: Optional[float] = None

    # State
    break_even_applied: bool = False
    locked: bool = False
    locked_at_price: Optional[float] = None
    last_trailing_stop: Optional[float] = None
    partial_taken: bool = False
    pending_lock_price: Optional[float] = None

    opened_at: datetime = None

    def __post_init__(self):
        if self.opened_at is None:
            self.opened_at = datetime.now(timezone.utc)
        if self.last_trailing_stop is None:
            self.last_trailing_stop = self.current_stop

    def profit_distance(self, price: float) -> float:
        """Price distance in profit (negative when losing)"""
        return self.direction.profit_distance(self.entry_price, price)

    def mark_break_even(self, stop: float):
        """Record a break-even stop"""
        self.current_stop = stop
        self.last_trailing_stop = stop
        self.break_even_applied = True

    def mark_locked(self, stop: float):
        """Freeze the stop at a higher step's entry"""
        self.current_stop = stop
        self.last_trailing_stop = stop
        self.locked = True
        self.locked_at_price = stop
        self.pending_lock_price = None

    def to_dict(self) -> Dict:
        """Convert to dictionary"""
        return {
            'trade_id': self.trade_id,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'step': self.step_index,
            'entry_price': self.entry_price,
            'volume': self.volume,
            'stop': self.current_stop,
            'target': self.current_target,
            'break_even': self.break_even_applied,
            'locked': self.locked,
            'locked_at': self.locked_at_price,
            'last_trailing_stop': self.last_trailing_stop,
            'partial_taken': self.partial_taken,
        }


class PositionLedger:
    """Trade id -> TrackedStep for one instrument"""

    def __init__(self, symbol: str):
        self.symbol = symbol
        self._steps: Dict[Hashable, TrackedStep] = {}

    def add(self, step: TrackedStep) -> TrackedStep:
        """Track a step

        Raises:
            ValueError: if the id is already tracked or the symbol differs
        """
        if step.symbol != self.symbol:
            raise ValueError(f"Step symbol {step.symbol} does not belong to ledger {self.symbol}")
        if step.trade_id in self._steps:
            raise ValueError(f"Trade {step.trade_id} already tracked")

        self._steps[step.trade_id] = step
        logger.debug(
            f"Tracking {step.trade_id}: {step.direction.value} step {step.step_index} "
            f"@ {step.entry_price:.5f}"
        )
        return step

    def remove(self, trade_id: Hashable) -> Optional[TrackedStep]:
        """Stop tracking a trade (no-op if unknown)"""
        return self._steps.pop(trade_id, None)

    def get(self, trade_id: Hashable) -> Optional[TrackedStep]:
        return self._steps.get(trade_id)

    def steps(self, direction: Optional[Direction] = None) -> List[TrackedStep]:
        """Snapshot list of tracked steps, ordered by step index"""
        steps = [
            s for s in self._steps.values()
            if direction is None or s.direction is direction
        ]
        return sorted(steps, key=lambda s: (s.step_index, s.opened_at))

    def clear(self):
        self._steps.clear()

    def __contains__(self, trade_id: Hashable) -> bool:
        return trade_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[TrackedStep]:
        return iter(self.steps())


class LedgerBook:
    """Instrument-sharded ledgers; no state is shared between symbols"""

    def __init__(self):
        self._ledgers: Dict[str, PositionLedger] = {}

    def for_symbol(self, symbol: str) -> PositionLedger:
        if symbol not in self._ledgers:
            self._ledgers[symbol] = PositionLedger(symbol)
        return self._ledgers[symbol]

    @property
    def symbols(self) -> List[str]:
        return list(self._ledgers)
