"""Indicator Wiring
===================

Computes the indicator values the engine consumes from OHLC DataFrames
(columns open/high/low/close, oldest row first) and packs them into
MarketSnapshot / Tick objects.

- EMA: pandas ewm(span, adjust=False)
- RSI: Wilder smoothing (ewm alpha = 1/period)
- ATR: exponential moving average of the true range
- MACD histogram: (EMA fast - EMA slow) - signal EMA

Author: PyramidTrend Team
"""
from datetime import datetime
from typing import Optional

import numpy as np
import pandas as pd

from ..data.models import MarketSnapshot, Tick
from .timeframe_profiles import HTF_EMA_PERIOD, IndicatorProfile


PULLBACK_LOOKBACK = 3
SWING_BARS = 5


def _col(df: pd.DataFrame, name: str) -> pd.Series:
    """Column by lower or capitalized name"""
    if name in df.columns:
        return df[name]
    return df[name.capitalize()]


def ema(series: pd.Series, period: int) -> pd.Series:
    """Exponential moving average"""
    return series.ewm(span=period, adjust=False).mean()


def rsi(series: pd.Series, period: int = 14) -> pd.Series:
    """Relative Strength Index (Wilder)"""
    delta = series.diff()
    gain = delta.clip(lower=0)
    loss = (-delta).clip(lower=0)
    avg_gain = gain.ewm(alpha=1 / period, adjust=False).mean()
    avg_loss = loss.ewm(alpha=1 / period, adjust=False).mean()
    rs = avg_gain / (avg_loss + 1e-10)
    return 100 - (100 / (1 + rs))


def true_range(df: pd.DataFrame) -> pd.Series:
    high = _col(df, 'high')
    low = _col(df, 'low')
    prev_close = _col(df, 'close').shift(1)
    tr = pd.concat([
        high - low,
        (high - prev_close).abs(),
        (low - prev_close).abs()
    ], axis=1).max(axis=1)
    return tr


def atr(df: pd.DataFrame, period: int = 14) -> pd.Series:
    """Average True Range in price units (exponential)"""
    return ema(true_range(df), period)


def macd_histogram(series: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> pd.Series:
    """MACD line minus its signal line"""
    macd_line = ema(series, fast) - ema(series, slow)
    signal_line = ema(macd_line, signal)
    return macd_line - signal_line


def build_snapshot(
    ltf_df: pd.DataFrame,
    htf_df: pd.DataFrame,
    profile: IndicatorProfile,
    bid: Optional[float] = None,
    ask: Optional[float] = None,
    htf_ema_period: int = HTF_EMA_PERIOD,
    lookback: int = PULLBACK_LOOKBACK,
    swing_bars: int = SWING_BARS
) -> MarketSnapshot:
    """MarketSnapshot as of the last row of ltf_df

    Both frames must hold closed bars only.

    Raises:
        ValueError: if either frame has too few bars
    """
    if len(ltf_df) < max(lookback, swing_bars, 2):
        raise ValueError(f"Need at least {max(lookback, swing_bars, 2)} bars, got {len(ltf_df)}")
    if len(htf_df) < 1:
        raise ValueError("Higher timeframe data is empty")

    close = _col(ltf_df, 'close').astype(float)
    high = _col(ltf_df, 'high').astype(float)
    low = _col(ltf_df, 'low').astype(float)

    ema_short = ema(close, profile.ema_short)
    htf_close = _col(htf_df, 'close').astype(float)
    htf_ema = ema(htf_close, htf_ema_period)

    time = None
    if isinstance(ltf_df.index, pd.DatetimeIndex):
        time = ltf_df.index[-1].to_pydatetime()
    elif 'time' in ltf_df.columns:
        time = pd.Timestamp(ltf_df['time'].iloc[-1]).to_pydatetime()

    return MarketSnapshot(
        close=float(close.iloc[-1]),
        high=float(high.iloc[-1]),
        low=float(low.iloc[-1]),
        ema_short=float(ema_short.iloc[-1]),
        ema_short_prev=float(ema_short.iloc[-2]),
        ema_mid=float(ema(close, profile.ema_mid).iloc[-1]),
        ema_long=float(ema(close, profile.ema_long).iloc[-1]),
        htf_close=float(htf_close.iloc[-1]),
        htf_ema=float(htf_ema.iloc[-1]),
        rsi=float(rsi(close, profile.rsi).iloc[-1]),
        macd_hist=float(macd_histogram(
            close, profile.macd_fast, profile.macd_slow, profile.macd_signal
        ).iloc[-1]),
        atr=float(atr(ltf_df, profile.atr).iloc[-1]),
        recent_highs=high.iloc[-lookback:].tolist(),
        recent_lows=low.iloc[-lookback:].tolist(),
        recent_ema_short=ema_short.iloc[-lookback:].tolist(),
        swing_high=float(np.max(high.iloc[-swing_bars:].values)),
        swing_low=float(np.min(low.iloc[-swing_bars:].values)),
        bid=bid,
        ask=ask,
        time=time
    )


def build_tick(
    df: pd.DataFrame,
    bid: float,
    ask: float,
    atr_period: int = 14,
    time: Optional[datetime] = None
) -> Tick:
    """Tick from the current price and bars whose last row is still forming

    The forming bar's extremes are extended by the current bid.
    """
    if len(df) < 1:
        raise ValueError("No bars to build a tick from")

    bar_high = max(float(_col(df, 'high').iloc[-1]), bid)
    bar_low = min(float(_col(df, 'low').iloc[-1]), bid)
    atr_value = float(atr(df, atr_period).iloc[-1]) if len(df) > 1 else 0.0
    if np.isnan(atr_value):
        atr_value = 0.0

    return Tick(
        bid=bid,
        ask=ask,
        bar_high=bar_high,
        bar_low=bar_low,
        atr=atr_value,
        time=time
    )
