"""Analysis Layer Module

Components:
- SignalEvaluator: Trend bias, pullback touch and momentum continuation
- Timeframe profiles: Indicator periods and higher timeframe per chart
- Indicators: EMA/RSI/ATR/MACD wiring into MarketSnapshot and Tick
"""

from .signal_evaluator import Bias, SignalEvaluator, SignalReading
from .timeframe_profiles import IndicatorProfile, Timeframe, get_profile, higher_timeframe

__all__ = [
    "Bias",
    "SignalEvaluator",
    "SignalReading",
    "IndicatorProfile",
    "Timeframe",
    "get_profile",
    "higher_timeframe",
]
