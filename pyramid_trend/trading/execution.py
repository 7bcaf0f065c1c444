"""Execution collaborator contract

The engine never talks to a broker directly. It hands atomic intents to an
ExecutionClient; every method raises ExecutionFailed when the broker rejects
the request, in which case the engine leaves its ledger untouched.

Author: PyramidTrend Team
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Hashable, List, Optional, Protocol

from ..data.models import Direction


@dataclass
class OrderResult:
    """Successful market order"""
    trade_id: Hashable
    fill_price: float
    volume: float
    message: str = ""


@dataclass
class TradeRecord:
    """Broker-side view of an open trade"""
    trade_id: Hashable
    symbol: str
    direction: Direction
    volume: float
    entry_price: float
    stop: Optional[float] = None
    target: Optional[float] = None
    comment: str = ""
    label: str = ""
    opened_at: Optional[datetime] = None


class ExecutionClient(Protocol):
    """Order placement and position maintenance"""

    def open(
        self,
        symbol: str,
        direction: Direction,
        volume: float,
        stop: Optional[float],
        target: Optional[float],
        label: str,
        comment: str
    ) -> OrderResult:
        raise NotImplementedError

    def modify_stop(self, trade_id: Hashable, stop: float) -> None:
        raise NotImplementedError

    def modify_target(self, trade_id: Hashable, target: Optional[float]) -> None:
        raise NotImplementedError

    def close(self, trade_id: Hashable, volume: Optional[float] = None) -> None:
        raise NotImplementedError

    def list_open(self, label: str, symbol: str) -> List[TradeRecord]:
        raise NotImplementedError
