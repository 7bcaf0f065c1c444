"""Market Data Models
====================

Plain value objects shared by the analysis and trading layers:
- Direction: trade side with sign helpers
- InstrumentSpec: broker symbol properties (pip/tick size, volume rules)
- AccountState: balance and margin figures for sizing
- MarketSnapshot: indicator state as of the last closed bar
- Tick: price update used by tick-driven protection

Author: PyramidTrend Team
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class Direction(Enum):
    """Trade direction"""
    LONG = "BUY"
    SHORT = "SELL"

    @property
    def sign(self) -> int:
        """+1 for long, -1 for short"""
        return 1 if self is Direction.LONG else -1

    @property
    def opposite(self) -> "Direction":
        return Direction.SHORT if self is Direction.LONG else Direction.LONG

    def is_better(self, candidate: float, reference: float) -> bool:
        """True if candidate stop is more protective than reference"""
        if self is Direction.LONG:
            return candidate > reference
        return candidate < reference

    def profit_distance(self, entry_price: float, price: float) -> float:
        """Signed price distance in the trade's favour"""
        return (price - entry_price) * self.sign


@dataclass
class InstrumentSpec:
    """Broker properties of a traded symbol"""
    symbol: str
    pip_size: float = 0.0001
    tick_size: float = 0.00001
    pip_value: float = 10.0        # Account currency per pip per 1.0 volume
    min_volume: float = 0.01
    volume_step: float = 0.01
    max_volume: float = 100.0
    min_stop_distance_pips: float = 0.0

    def round_to_tick(self, price: float) -> float:
        """Round a price to the nearest tick"""
        if self.tick_size <= 0:
            return price
        ticks = round(price / self.tick_size)
        return round(ticks * self.tick_size, self._tick_decimals)

    def normalize_volume(self, volume: float) -> float:
        """Floor volume to the broker volume step"""
        if self.volume_step <= 0:
            return volume
        steps = math.floor(volume / self.volume_step + 1e-9)
        return round(steps * self.volume_step, self._volume_decimals)

    def pips(self, price_distance: float) -> float:
        """Convert a price distance to pips"""
        return price_distance / self.pip_size

    def price_distance(self, pips: float) -> float:
        """Convert pips to a price distance"""
        return pips * self.pip_size

    @property
    def min_stop_distance(self) -> float:
        return self.min_stop_distance_pips * self.pip_size

    @property
    def _tick_decimals(self) -> int:
        return _decimals(self.tick_size)

    @property
    def _volume_decimals(self) -> int:
        return _decimals(self.volume_step)


def _decimals(step: float) -> int:
    """Number of decimals needed to represent a step size"""
    text = f"{step:.10f}".rstrip("0")
    if "." not in text:
        return 0
    return len(text.split(".")[1])


@dataclass
class AccountState:
    """Account figures used for risk sizing"""
    balance: float
    free_margin: float = float("inf")
    margin_per_min_lot: float = 0.0   # <= 0 means margin is not capped
    currency: str = "USD"


@dataclass
class MarketSnapshot:
    """Indicator and price state as of the last closed bar

    Sequences (recent_highs, recent_lows, recent_ema_short) are ordered
    oldest -> newest and end with the last closed bar.
    """
    close: float
    high: float
    low: float
    ema_short: float
    ema_short_prev: float
    ema_mid: float
    ema_long: float
    htf_close: float
    htf_ema: float
    rsi: float
    macd_hist: float
    atr: float
    recent_highs: List[float] = field(default_factory=list)
    recent_lows: List[float] = field(default_factory=list)
    recent_ema_short: List[float] = field(default_factory=list)
    swing_high: Optional[float] = None
    swing_low: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None
    time: Optional[datetime] = None


@dataclass
class Tick:
    """Price update for tick-driven protection

    bar_high / bar_low are the extremes of the bar currently forming.
    """
    bid: float
    ask: float
    bar_high: float
    bar_low: float
    atr: float
    time: Optional[datetime] = None

    @property
    def spread(self) -> float:
        return self.ask - self.bid

    def price_for(self, direction: Direction) -> float:
        """Price at which a position of this direction would close"""
        return self.bid if direction is Direction.LONG else self.ask
