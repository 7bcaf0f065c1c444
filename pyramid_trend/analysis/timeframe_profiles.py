"""Timeframe Indicator Profiles
===============================

Indicator periods per traded timeframe and the higher timeframe used for
trend confirmation. Unknown timeframes fall back to the daily profile
(and to the weekly chart as higher timeframe).

Author: PyramidTrend Team
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union

from loguru import logger


HTF_EMA_PERIOD = 50


class Timeframe(Enum):
    """Chart timeframe (MT5 naming)"""
    M1 = "M1"
    M5 = "M5"
    M15 = "M15"
    M30 = "M30"
    H1 = "H1"
    H4 = "H4"
    D1 = "D1"
    W1 = "W1"
    MN1 = "MN1"

    @classmethod
    def parse(cls, value: Union[str, "Timeframe"]) -> "Timeframe":
        """Parse 'H1', 'h1', 'D1' etc.

        Raises:
            ValueError: for an unknown timeframe name
        """
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


@dataclass(frozen=True)
class IndicatorProfile:
    """Indicator periods for one timeframe"""
    ema_short: int
    ema_mid: int
    ema_long: int
    rsi: int
    atr: int
    macd_fast: int
    macd_slow: int
    macd_signal: int

    @property
    def warmup_bars(self) -> int:
        """Bars needed before the slowest indicator is meaningful"""
        return max(self.ema_long, self.macd_slow + self.macd_signal, self.rsi, self.atr) + 1


DAILY_PROFILE = IndicatorProfile(21, 50, 200, 21, 14, 12, 26, 9)

PROFILES: Dict[Timeframe, IndicatorProfile] = {
    Timeframe.M1: IndicatorProfile(200, 500, 1200, 14, 14, 12, 26, 9),
    Timeframe.M5: IndicatorProfile(100, 200, 500, 14, 14, 12, 26, 9),
    Timeframe.M15: IndicatorProfile(50, 100, 200, 14, 14, 12, 26, 9),
    Timeframe.M30: IndicatorProfile(40, 80, 200, 14, 14, 12, 26, 9),
    Timeframe.H1: IndicatorProfile(21, 50, 200, 14, 14, 12, 26, 9),
    Timeframe.H4: IndicatorProfile(21, 50, 200, 21, 14, 12, 26, 9),
    Timeframe.D1: DAILY_PROFILE,
    Timeframe.W1: IndicatorProfile(10, 20, 50, 14, 10, 8, 17, 9),
    Timeframe.MN1: IndicatorProfile(6, 12, 24, 14, 6, 6, 12, 6),
}

HIGHER_TIMEFRAME: Dict[Timeframe, Timeframe] = {
    Timeframe.M1: Timeframe.M5,
    Timeframe.M5: Timeframe.M15,
    Timeframe.M15: Timeframe.M30,
    Timeframe.M30: Timeframe.H1,
    Timeframe.H1: Timeframe.H4,
    Timeframe.H4: Timeframe.D1,
    Timeframe.D1: Timeframe.W1,
    Timeframe.W1: Timeframe.MN1,
}


def _coerce(timeframe) -> Union[Timeframe, None]:
    try:
        return Timeframe.parse(timeframe)
    except ValueError:
        return None


def get_profile(timeframe) -> IndicatorProfile:
    """Indicator profile for a timeframe (daily profile if unknown)"""
    tf = _coerce(timeframe)
    if tf is None or tf not in PROFILES:
        logger.warning(f"Unknown timeframe {timeframe}. Using Daily profile.")
        return DAILY_PROFILE
    return PROFILES[tf]


def higher_timeframe(timeframe) -> Timeframe:
    """Next higher timeframe (weekly if unsupported)"""
    tf = _coerce(timeframe)
    if tf is None or tf not in HIGHER_TIMEFRAME:
        logger.warning(f"Unsupported timeframe {timeframe}. Defaulting HTF to Weekly.")
        return Timeframe.W1
    return HIGHER_TIMEFRAME[tf]
