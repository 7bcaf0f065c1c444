"""Protection Engine - Group-Coordinated Stop Management
========================================================

Evolves the protective levels of one direction group per price update:

A. Break-even promotion once profit reaches ATR x multiplier
B. Coordinated trailing: one candidate per group, clamped below the entry
   of any higher step, applied only when it improves the step's ratchet
   baseline by at least the trailing step
C. Partial take-profit at target, then break-even on the remainder
D. Target removal after a pyramid step / target trailing on bar close
E. Lock of the preceding step at a new step's entry

Long groups are priced on the bid, short groups on the ask. Any rejected
modification leaves the tracked step unchanged; the next tick re-evaluates.

Author: PyramidTrend Team
"""
from dataclasses import dataclass
from enum import Enum
from typing import Hashable, List, Optional

from loguru import logger

from ..data.models import Direction, InstrumentSpec, Tick
from .errors import ExecutionFailed
from .position_ledger import PositionLedger, TrackedStep
from .pyramid_group import PRICE_EPSILON, PyramidGroup


class BreakEvenBufferMode(Enum):
    """How the break-even buffer beyond entry is computed"""
    FIXED = "fixed"
    COST_ADJUSTED = "cost_adjusted"


@dataclass
class ProtectionParams:
    """Protection configuration"""
    trailing_enabled: bool = True
    trailing_atr_multiplier: float = 1.0
    trailing_step_pips: float = 5.0
    break_even_atr_multiplier: float = 1.0
    break_even_buffer_pips: float = 2.0
    break_even_buffer_mode: BreakEvenBufferMode = BreakEvenBufferMode.FIXED
    commission_pips: float = 0.0
    partial_tp_percent: float = 50.0
    remove_target_after_pyramid: bool = True
    trail_target_on_bar_close: bool = False
    tp_trail_atr_multiplier: float = 2.0


@dataclass
class ProtectionAction:
    """A modification the engine applied"""
    kind: str                   # break_even, trailing, partial_tp, closed, lock, tp_removed, tp_trail
    trade_id: Hashable
    step_index: int
    price: Optional[float] = None
    volume: Optional[float] = None


class ProtectionEngine:
    """Per-group break-even, trailing, partial TP and lock handling"""

    def __init__(
        self,
        instrument: InstrumentSpec,
        execution,
        params: ProtectionParams = None
    ):
        """Initialize Protection Engine

        Args:
            instrument: Broker properties of the traded symbol
            execution: ExecutionClient used for modifications
            params: Protection configuration
        """
        self.instrument = instrument
        self.execution = execution
        self.params = params or ProtectionParams()

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def evaluate(self, ledger: PositionLedger, tick: Tick) -> List[ProtectionAction]:
        """Run tick protection for both direction groups of a ledger

        Steps fully closed by a partial take-profit are removed from the ledger.
        """
        actions = []
        for direction in (Direction.LONG, Direction.SHORT):
            group = PyramidGroup.from_ledger(ledger, direction)
            if not group.steps:
                continue
            actions.extend(self.evaluate_group(group, tick))

        for action in actions:
            if action.kind == "closed":
                ledger.remove(action.trade_id)
        return actions

    def evaluate_group(self, group: PyramidGroup, tick: Tick) -> List[ProtectionAction]:
        """Run steps A-C for one direction group

        Args:
            group: Direction group to protect
            tick: Current price update

        Returns:
            List of applied actions
        """
        price = tick.price_for(group.direction)
        actions: List[ProtectionAction] = []

        for step in group:
            if step.pending_lock_price is not None and not step.locked:
                self._retry_lock(step, price, actions)

        for step in group:
            self.apply_break_even(step, price, tick, actions)

        if self.params.trailing_enabled:
            self.apply_trailing(group, price, tick, actions)

        if self.params.partial_tp_percent > 0:
            for step in group:
                self.apply_partial_take_profit(step, price, tick, actions)

        return actions

    # =========================================================================
    # STEP A - BREAK-EVEN
    # =========================================================================

    def break_even_buffer(self, spread: float = 0.0) -> float:
        """Price distance beyond entry used for break-even stops"""
        buffer = self.instrument.price_distance(self.params.break_even_buffer_pips)
        if self.params.break_even_buffer_mode is BreakEvenBufferMode.COST_ADJUSTED:
            buffer += max(spread, 0.0)
            buffer += self.instrument.price_distance(self.params.commission_pips)
        return buffer

    def break_even_price(self, step: TrackedStep, spread: float = 0.0) -> float:
        """Break-even stop for a step, rounded to tick"""
        buffer = self.break_even_buffer(spread)
        return self.instrument.round_to_tick(step.entry_price + step.direction.sign * buffer)

    def apply_break_even(
        self,
        step: TrackedStep,
        price: float,
        tick: Tick,
        actions: Optional[List[ProtectionAction]] = None
    ) -> bool:
        """Promote a step to break-even once profit reaches the ATR trigger

        Returns:
            True if the step was promoted on this call
        """
        if step.break_even_applied or step.locked:
            return False

        threshold = tick.atr * self.params.break_even_atr_multiplier
        if threshold <= 0:
            return False

        profit = step.profit_distance(price)
        if profit < threshold:
            return False

        direction = step.direction
        candidate = self.break_even_price(step, tick.spread)

        # Existing stop already protects at least break-even
        if step.current_stop is not None and not direction.is_better(candidate, step.current_stop):
            step.break_even_applied = True
            logger.debug(
                f"{step.trade_id} stop {step.current_stop:.5f} already at or beyond "
                f"break-even {candidate:.5f}"
            )
            return True

        if not self._valid_stop(direction, candidate, price):
            return False

        try:
            self.execution.modify_stop(step.trade_id, candidate)
        except ExecutionFailed as e:
            logger.warning(f"[BREAK-EVEN] {step.trade_id} modify failed: {e}")
            return False

        step.mark_break_even(candidate)
        logger.info(
            f"[BREAK-EVEN] {direction.value} step {step.step_index} ({step.trade_id}) "
            f"SL -> {candidate:.5f} (profit {self.instrument.pips(profit):.1f} pips)"
        )
        if actions is not None:
            actions.append(ProtectionAction("break_even", step.trade_id, step.step_index, candidate))
        return True

    # =========================================================================
    # STEP B - COORDINATED TRAILING
    # =========================================================================

    def trailing_candidate(self, direction: Direction, tick: Tick) -> float:
        """One trailing stop proposal for the whole group"""
        distance = tick.atr * self.params.trailing_atr_multiplier
        if direction is Direction.LONG:
            return self.instrument.round_to_tick(tick.bar_high - distance)
        return self.instrument.round_to_tick(tick.bar_low + distance)

    def apply_trailing(
        self,
        group: PyramidGroup,
        price: float,
        tick: Tick,
        actions: Optional[List[ProtectionAction]] = None
    ) -> int:
        """Propose the group trailing candidate to every eligible step

        Returns:
            Number of steps whose stop moved
        """
        if tick.atr <= 0:
            return 0

        direction = group.direction
        candidate = self.trailing_candidate(direction, tick)
        min_improvement = max(
            self.instrument.min_stop_distance,
            self.instrument.price_distance(self.params.trailing_step_pips)
        )
        moved = 0

        for step in group:
            if step.locked or not step.break_even_applied:
                continue

            proposal = candidate
            bound = group.entry_bound_above(step)
            if bound is not None and direction.is_better(proposal, bound):
                proposal = self.instrument.round_to_tick(bound)

            baseline = step.last_trailing_stop
            if baseline is None:
                baseline = step.current_stop
            if baseline is not None:
                improvement = direction.profit_distance(baseline, proposal)
                if improvement < min_improvement - PRICE_EPSILON or improvement <= 0:
                    continue

            if step.current_stop is not None and not direction.is_better(proposal, step.current_stop):
                continue

            if not self._valid_stop(direction, proposal, price):
                continue

            try:
                self.execution.modify_stop(step.trade_id, proposal)
            except ExecutionFailed as e:
                logger.warning(f"[TRAILING] {step.trade_id} modify failed: {e}")
                continue

            previous = step.current_stop
            step.current_stop = proposal
            step.last_trailing_stop = proposal
            moved += 1

            logger.info(
                f"[TRAILING] {direction.value} step {step.step_index} ({step.trade_id}) "
                f"SL {_fmt(previous)} -> {proposal:.5f}"
                + (" (clamped to higher step entry)" if proposal != candidate else "")
            )
            if actions is not None:
                actions.append(ProtectionAction("trailing", step.trade_id, step.step_index, proposal))

        return moved

    # =========================================================================
    # STEP C - PARTIAL TAKE-PROFIT
    # =========================================================================

    def apply_partial_take_profit(
        self,
        step: TrackedStep,
        price: float,
        tick: Tick,
        actions: Optional[List[ProtectionAction]] = None
    ) -> bool:
        """Close part of a step at its target and secure the rest

        Returns:
            True if volume was closed on this call
        """
        if step.partial_taken or step.current_target is None:
            return False

        direction = step.direction
        if direction.profit_distance(step.current_target, price) < 0:
            return False

        spec = self.instrument
        volume = spec.normalize_volume(step.volume * self.params.partial_tp_percent / 100.0)
        volume = max(spec.min_volume, min(volume, step.volume))
        full_close = volume >= step.volume - PRICE_EPSILON

        try:
            self.execution.close(step.trade_id, None if full_close else volume)
        except ExecutionFailed as e:
            logger.warning(f"[PARTIAL TP] {step.trade_id} close failed: {e}")
            return False

        if full_close:
            logger.info(
                f"[PARTIAL TP] {direction.value} step {step.step_index} ({step.trade_id}) "
                f"closed in full ({step.volume}) at target {step.current_target:.5f}"
            )
            if actions is not None:
                actions.append(ProtectionAction("closed", step.trade_id, step.step_index, price, step.volume))
            return True

        step.volume = spec.normalize_volume(step.volume - volume)
        step.partial_taken = True
        logger.info(
            f"[PARTIAL TP] {direction.value} step {step.step_index} ({step.trade_id}) "
            f"closed {volume} at {price:.5f}, remaining {step.volume}"
        )
        if actions is not None:
            actions.append(ProtectionAction("partial_tp", step.trade_id, step.step_index, price, volume))

        self._secure_remainder(step, price, tick.spread, actions)
        return True

    def _secure_remainder(
        self,
        step: TrackedStep,
        price: float,
        spread: float,
        actions: Optional[List[ProtectionAction]]
    ):
        """Break-even stop and no target after a partial close"""
        direction = step.direction
        be_price = self.break_even_price(step, spread)

        # Locked stops stay at the lock price
        if step.locked:
            step.break_even_applied = True
        elif step.current_stop is not None and not direction.is_better(be_price, step.current_stop):
            step.break_even_applied = True
        elif self._valid_stop(direction, be_price, price):
            try:
                self.execution.modify_stop(step.trade_id, be_price)
            except ExecutionFailed as e:
                logger.warning(f"[PARTIAL TP] {step.trade_id} break-even modify failed: {e}")
            else:
                step.mark_break_even(be_price)
                logger.info(f"[BREAK-EVEN] {step.trade_id} SL -> {be_price:.5f} after partial TP")
                if actions is not None:
                    actions.append(ProtectionAction("break_even", step.trade_id, step.step_index, be_price))

        if self._remove_target(step):
            if actions is not None:
                actions.append(ProtectionAction("tp_removed", step.trade_id, step.step_index))

    # =========================================================================
    # STEP D - TARGET HANDLING
    # =========================================================================

    def trail_targets(self, group: PyramidGroup, price: float, atr: float) -> List[ProtectionAction]:
        """Pull targets toward price on bar close (never away from it)"""
        actions = []
        if not self.params.trail_target_on_bar_close or atr <= 0:
            return actions

        direction = group.direction
        candidate = self.instrument.round_to_tick(
            price + direction.sign * atr * self.params.tp_trail_atr_multiplier
        )

        for step in group:
            if step.current_target is None:
                continue
            # Closer to price than the current target, still beyond price
            if direction.profit_distance(candidate, step.current_target) <= PRICE_EPSILON:
                continue
            if direction.profit_distance(price, candidate) <= 0:
                continue

            try:
                self.execution.modify_target(step.trade_id, candidate)
            except ExecutionFailed as e:
                logger.warning(f"[TP TRAIL] {step.trade_id} modify failed: {e}")
                continue

            logger.info(
                f"[TP TRAIL] {direction.value} step {step.step_index} ({step.trade_id}) "
                f"TP {step.current_target:.5f} -> {candidate:.5f}"
            )
            step.current_target = candidate
            actions.append(ProtectionAction("tp_trail", step.trade_id, step.step_index, candidate))

        return actions

    def _remove_target(self, step: TrackedStep) -> bool:
        if step.current_target is None:
            return False
        try:
            self.execution.modify_target(step.trade_id, None)
        except ExecutionFailed as e:
            logger.warning(f"[TP REMOVED] {step.trade_id} modify failed: {e}")
            return False

        logger.info(f"[TP REMOVED] {step.direction.value} step {step.step_index} ({step.trade_id})")
        step.current_target = None
        return True

    # =========================================================================
    # STEP E - LOCK
    # =========================================================================

    def lock_previous_steps(self, group: PyramidGroup, new_step: TrackedStep) -> List[ProtectionAction]:
        """Freeze the preceding step at the new step's entry

        Called once, right after a new step opened. With target removal
        enabled every lower step also loses its target.
        """
        actions = []
        lower = group.lower_steps(new_step)
        if not lower:
            return actions

        previous = lower[-1]
        lock_price = self.instrument.round_to_tick(new_step.entry_price)
        if self._lock(previous, lock_price):
            actions.append(ProtectionAction("lock", previous.trade_id, previous.step_index, lock_price))

        if self.params.remove_target_after_pyramid:
            for step in lower:
                if self._remove_target(step):
                    actions.append(ProtectionAction("tp_removed", step.trade_id, step.step_index))

        return actions

    def _lock(self, step: TrackedStep, lock_price: float) -> bool:
        if step.locked:
            return False

        direction = step.direction
        if step.current_stop is not None and not direction.is_better(lock_price, step.current_stop):
            # Never loosen a stop to lock it
            step.mark_locked(step.current_stop)
            logger.info(
                f"[LOCK] {direction.value} step {step.step_index} ({step.trade_id}) "
                f"locked at existing SL {step.current_stop:.5f}"
            )
            return True

        try:
            self.execution.modify_stop(step.trade_id, lock_price)
        except ExecutionFailed as e:
            step.pending_lock_price = lock_price
            logger.warning(
                f"[LOCK] {step.trade_id} lock at {lock_price:.5f} failed, retrying next tick: {e}"
            )
            return False

        step.mark_locked(lock_price)
        logger.info(
            f"[LOCK] {direction.value} step {step.step_index} ({step.trade_id}) "
            f"SL locked at {lock_price:.5f}"
        )
        return True

    def _retry_lock(self, step: TrackedStep, price: float, actions: List[ProtectionAction]):
        lock_price = step.pending_lock_price
        if not self._valid_stop(step.direction, lock_price, price):
            return
        if self._lock(step, lock_price):
            actions.append(ProtectionAction("lock", step.trade_id, step.step_index, step.current_stop))

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _valid_stop(self, direction: Direction, stop: float, price: float) -> bool:
        """Stop sits on the protective side of price, at least the broker distance away"""
        distance = direction.profit_distance(stop, price)
        return distance > 0 and distance >= self.instrument.min_stop_distance - PRICE_EPSILON


def _fmt(price: Optional[float]) -> str:
    return "none" if price is None else f"{price:.5f}"
