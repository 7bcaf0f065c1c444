"""Reversal Guard - Forced Closure on Trend Reversal
===================================================

On every bar close (and once at startup) each tracked step is checked
against the traded timeframe trend. A long step is closed when the trend
turned bearish with RSI < 50 and a negative MACD histogram; shorts mirror.

Author: PyramidTrend Team
"""
from typing import List

from loguru import logger

from ..analysis.signal_evaluator import Bias, SignalEvaluator
from ..data.models import Direction, MarketSnapshot
from .errors import ExecutionFailed


class ReversalGuard:
    """Detects trend reversal against open steps"""

    def __init__(self, evaluator: SignalEvaluator = None):
        self.evaluator = evaluator or SignalEvaluator()

    def reversal_against(self, direction: Direction, snapshot: MarketSnapshot) -> bool:
        """True when the trend reversed against a position of this direction"""
        bias = self.evaluator.trend_bias(snapshot)
        opposite = direction.opposite

        if direction is Direction.LONG and bias is not Bias.BEARISH:
            return False
        if direction is Direction.SHORT and bias is not Bias.BULLISH:
            return False
        return self.evaluator.momentum_confirms(snapshot, opposite)

    def check(self, ledger, snapshot: MarketSnapshot, execution) -> List:
        """Close every step the trend reversed against

        Args:
            ledger: PositionLedger of the instrument
            snapshot: Market state at the last closed bar
            execution: ExecutionClient used to close positions

        Returns:
            List of trade ids closed and removed from the ledger
        """
        closed = []
        for step in ledger.steps():
            if not self.reversal_against(step.direction, snapshot):
                continue

            try:
                execution.close(step.trade_id)
            except ExecutionFailed as e:
                logger.warning(
                    f"[REVERSAL] Close of {step.trade_id} (step {step.step_index}) failed: {e}"
                )
                continue

            ledger.remove(step.trade_id)
            closed.append(step.trade_id)
            logger.info(
                f"[REVERSAL] Position {step.trade_id} closed - trend reversed "
                f"against {step.direction.value} step {step.step_index}"
            )

        return closed
