"""Signal Evaluator - Trend Bias and Entry Eligibility
=====================================================

Turns a MarketSnapshot into a directional reading:
- Trend bias on the traded timeframe (close vs mid/long EMA)
- Higher timeframe bias (close vs its EMA)
- Pullback touch of the short EMA within a volatility band
- Strong continuation (RSI extreme + MACD + displacement from short EMA)

Entry is only signalled when the traded and higher timeframe agree.
Pure function of the snapshot, no state.

Author: PyramidTrend Team
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..data.models import Direction, MarketSnapshot


PULLBACK_LOOKBACK_BARS = 3


class Bias(Enum):
    """Directional bias"""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"

    @property
    def direction(self) -> Optional[Direction]:
        if self is Bias.BULLISH:
            return Direction.LONG
        if self is Bias.BEARISH:
            return Direction.SHORT
        return None


@dataclass
class SignalReading:
    """Output of SignalEvaluator.evaluate"""
    bias: Bias
    higher_tf_bias: Bias
    pullback_touch: bool = False
    momentum_ok: bool = False
    strong_continuation: bool = False

    @property
    def aligned_direction(self) -> Optional[Direction]:
        """Direction when traded and higher timeframe agree"""
        if self.bias is Bias.NEUTRAL or self.bias != self.higher_tf_bias:
            return None
        return self.bias.direction

    @property
    def entry_signal(self) -> bool:
        """Aligned trend with a strong or pullback continuation setup"""
        if self.aligned_direction is None:
            return False
        return self.strong_continuation or (self.pullback_touch and self.momentum_ok)


class SignalEvaluator:
    """Evaluates trend bias and entry setups"""

    def __init__(
        self,
        pullback_lookback: int = PULLBACK_LOOKBACK_BARS,
        band_ema_fraction: float = 0.002,
        band_atr_fraction: float = 0.3,
        strong_rsi_long: float = 60.0,
        strong_rsi_short: float = 40.0,
        rsi_midpoint: float = 50.0,
        min_displacement: float = 0.003
    ):
        """Initialize Signal Evaluator

        Args:
            pullback_lookback: Bars checked for a short EMA touch
            band_ema_fraction: Band floor as fraction of the short EMA (0.2%)
            band_atr_fraction: Band floor as fraction of ATR (30%)
            strong_rsi_long: RSI above this is a strong long continuation
            strong_rsi_short: RSI below this is a strong short continuation
            rsi_midpoint: RSI midpoint for ordinary momentum
            min_displacement: Minimum distance beyond short EMA, fraction of close
        """
        self.pullback_lookback = pullback_lookback
        self.band_ema_fraction = band_ema_fraction
        self.band_atr_fraction = band_atr_fraction
        self.strong_rsi_long = strong_rsi_long
        self.strong_rsi_short = strong_rsi_short
        self.rsi_midpoint = rsi_midpoint
        self.min_displacement = min_displacement

    @staticmethod
    def trend_bias(snapshot: MarketSnapshot) -> Bias:
        """Traded timeframe bias from close vs mid and long EMA"""
        close = snapshot.close
        if close > snapshot.ema_mid and close > snapshot.ema_long:
            return Bias.BULLISH
        if close < snapshot.ema_mid and close < snapshot.ema_long:
            return Bias.BEARISH
        return Bias.NEUTRAL

    @staticmethod
    def higher_tf_bias(snapshot: MarketSnapshot) -> Bias:
        """Higher timeframe bias from its close vs its EMA"""
        if snapshot.htf_close > snapshot.htf_ema:
            return Bias.BULLISH
        if snapshot.htf_close < snapshot.htf_ema:
            return Bias.BEARISH
        return Bias.NEUTRAL

    def momentum_confirms(self, snapshot: MarketSnapshot, direction: Direction) -> bool:
        """RSI beyond the midpoint with a same-signed MACD histogram"""
        if direction is Direction.LONG:
            return snapshot.rsi > self.rsi_midpoint and snapshot.macd_hist > 0
        return snapshot.rsi < self.rsi_midpoint and snapshot.macd_hist < 0

    def pullback_band(self, snapshot: MarketSnapshot) -> float:
        """Dynamic band width around the short EMA"""
        slope = abs(snapshot.ema_short - snapshot.ema_short_prev)
        return max(
            snapshot.ema_short * self.band_ema_fraction,
            snapshot.atr * self.band_atr_fraction
        ) + slope

    def pullback_touch(self, snapshot: MarketSnapshot, direction: Direction) -> bool:
        """Did price touch the short EMA band in the lookback window"""
        band = self.pullback_band(snapshot)
        n = self.pullback_lookback
        highs = snapshot.recent_highs[-n:]
        lows = snapshot.recent_lows[-n:]
        emas = snapshot.recent_ema_short[-n:]

        for high, low, ema in zip(highs, lows, emas):
            if direction is Direction.LONG and low <= ema + band:
                return True
            if direction is Direction.SHORT and high >= ema - band:
                return True
        return False

    def strong_continuation(self, snapshot: MarketSnapshot, direction: Direction) -> bool:
        """Strong momentum with price already displaced from the short EMA"""
        displacement = snapshot.close * self.min_displacement
        if direction is Direction.LONG:
            return (
                snapshot.rsi > self.strong_rsi_long
                and snapshot.macd_hist > 0
                and snapshot.close > snapshot.ema_short + displacement
            )
        return (
            snapshot.rsi < self.strong_rsi_short
            and snapshot.macd_hist < 0
            and snapshot.close < snapshot.ema_short - displacement
        )

    def evaluate(self, snapshot: MarketSnapshot) -> SignalReading:
        """Evaluate the snapshot

        Args:
            snapshot: Market state at the last closed bar

        Returns:
            SignalReading; setup flags are computed for the traded
            timeframe bias direction and are False when it is neutral
        """
        bias = self.trend_bias(snapshot)
        reading = SignalReading(bias=bias, higher_tf_bias=self.higher_tf_bias(snapshot))

        direction = bias.direction
        if direction is None:
            return reading

        reading.pullback_touch = self.pullback_touch(snapshot, direction)
        reading.momentum_ok = self.momentum_confirms(snapshot, direction)
        reading.strong_continuation = self.strong_continuation(snapshot, direction)
        return reading

    def describe(self, reading: SignalReading, snapshot: MarketSnapshot) -> str:
        """One-line condition checklist for logging"""
        def check(cond: bool) -> str:
            return "[x]" if cond else "[ ]"

        if reading.entry_signal:
            entry = f"{reading.aligned_direction.value} signal"
        else:
            entry = "no entry"

        return (
            f"{entry} | "
            f"{check(reading.bias is Bias.BULLISH)} trend up "
            f"{check(reading.bias is Bias.BEARISH)} trend down | "
            f"{check(reading.higher_tf_bias is Bias.BULLISH)} HTF up "
            f"{check(reading.higher_tf_bias is Bias.BEARISH)} HTF down | "
            f"{check(reading.pullback_touch)} pullback | "
            f"{check(reading.strong_continuation)} strong | "
            f"RSI {snapshot.rsi:.1f} MACD {snapshot.macd_hist:.5f} | "
            f"Close {snapshot.close:.5f}"
        )
