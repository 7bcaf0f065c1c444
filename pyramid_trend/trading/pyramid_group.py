"""Pyramid Group - Admission Rules
=================================

A PyramidGroup is the ordered set of open steps for one
(instrument, direction). It is a derived view over the PositionLedger and is
rebuilt whenever it is needed.

Admission of a new step, checked in order:
1. step count < max steps
2. highest step already at break-even
3. candidate entry at least the pyramiding distance from the highest entry

Author: PyramidTrend Team
"""
from typing import List, Optional

from loguru import logger

from ..data.models import Direction
from .errors import AdmissionResult
from .position_ledger import PositionLedger, TrackedStep


PRICE_EPSILON = 1e-9


class PyramidGroup:
    """Steps sharing an instrument and direction, ordered by step index"""

    def __init__(self, symbol: str, direction: Direction, steps: List[TrackedStep]):
        self.symbol = symbol
        self.direction = direction
        self.steps = sorted(
            (s for s in steps if s.direction is direction),
            key=lambda s: s.step_index
        )

    @classmethod
    def from_ledger(cls, ledger: PositionLedger, direction: Direction) -> "PyramidGroup":
        return cls(ledger.symbol, direction, ledger.steps(direction))

    @property
    def step_count(self) -> int:
        return len(self.steps)

    @property
    def highest_step(self) -> Optional[TrackedStep]:
        return self.steps[-1] if self.steps else None

    @property
    def next_step_index(self) -> int:
        """Index for a new step; unique even after mid-group removals"""
        highest = self.highest_step
        return 0 if highest is None else highest.step_index + 1

    def higher_steps(self, step: TrackedStep) -> List[TrackedStep]:
        """Steps with a higher index than the given step"""
        return [s for s in self.steps if s.step_index > step.step_index]

    def lower_steps(self, step: TrackedStep) -> List[TrackedStep]:
        """Steps with a lower index than the given step"""
        return [s for s in self.steps if s.step_index < step.step_index]

    def entry_bound_above(self, step: TrackedStep) -> Optional[float]:
        """Tightest higher-step entry a lower step's stop may not pass

        Long: the lowest entry among higher steps. Short: the highest.
        """
        higher = self.higher_steps(step)
        if not higher:
            return None
        entries = [s.entry_price for s in higher]
        return min(entries) if self.direction is Direction.LONG else max(entries)

    def can_admit_step(
        self,
        candidate_entry_price: float,
        min_distance: float,
        max_steps: int
    ) -> AdmissionResult:
        """Check whether a new step may be opened

        Args:
            candidate_entry_price: Intended entry price
            min_distance: Minimum price distance from the highest step's entry
            max_steps: Maximum steps in the group

        Returns:
            AdmissionResult
        """
        if self.step_count >= max_steps:
            return AdmissionResult.REJECTED_MAX_STEPS

        last = self.highest_step
        if last is None:
            return AdmissionResult.ALLOWED

        if not last.break_even_applied:
            return AdmissionResult.REJECTED_NOT_AT_BREAK_EVEN

        # Tolerance absorbs float noise when the distance equals the minimum
        if abs(candidate_entry_price - last.entry_price) < min_distance - PRICE_EPSILON:
            return AdmissionResult.REJECTED_TOO_CLOSE

        return AdmissionResult.ALLOWED

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def __repr__(self) -> str:
        indices = ",".join(str(s.step_index) for s in self.steps)
        return f"PyramidGroup({self.symbol} {self.direction.value} steps=[{indices}])"


def can_admit_step(
    group: PyramidGroup,
    direction: Direction,
    candidate_entry_price: float,
    min_distance: float,
    max_steps: int
) -> AdmissionResult:
    """Admission check for a direction group, logging rejections"""
    if group.direction is not direction:
        raise ValueError(f"Group is {group.direction.value}, asked for {direction.value}")

    result = group.can_admit_step(candidate_entry_price, min_distance, max_steps)

    if result is AdmissionResult.REJECTED_MAX_STEPS:
        logger.info(f"[SKIP] Max pyramid steps ({max_steps}) reached for {direction.value}")
    elif result is AdmissionResult.REJECTED_NOT_AT_BREAK_EVEN:
        logger.info(
            f"[SKIP] {direction.value} step {group.highest_step.step_index} not at break-even yet"
        )
    elif result is AdmissionResult.REJECTED_TOO_CLOSE:
        logger.info(
            f"[SKIP] {direction.value} entry {candidate_entry_price:.5f} too close to "
            f"last pyramid entry {group.highest_step.entry_price:.5f}"
        )

    return result
