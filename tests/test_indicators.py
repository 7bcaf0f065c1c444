"""Indicator and Timeframe Profile Unit Tests
=============================================

Tests for indicator wiring into MarketSnapshot/Tick and the per-timeframe
indicator profiles.

Author: PyramidTrend Team
"""
import pytest
import numpy as np
import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from pyramid_trend.analysis.indicators import atr, build_snapshot, build_tick, ema, rsi
from pyramid_trend.analysis.timeframe_profiles import (
    DAILY_PROFILE,
    Timeframe,
    get_profile,
    higher_timeframe,
)


def trend_frame(n: int = 300, start: float = 1.1000, step: float = 0.0001, freq: str = "h") -> pd.DataFrame:
    """Steady trend with a fixed 10 pip bar range"""
    close = start + np.arange(n) * step
    index = pd.date_range("2026-01-01", periods=n, freq=freq, tz="UTC")
    return pd.DataFrame({
        'open': close - step,
        'high': close + 0.0005,
        'low': close - 0.0005,
        'close': close,
        'volume': np.full(n, 100),
    }, index=index)


class TestIndicators:
    """Tests for raw indicator series"""

    def test_ema_of_constant(self):
        """EMA of a flat series is the series"""
        series = pd.Series(np.full(50, 1.25))
        assert ema(series, 10).iloc[-1] == pytest.approx(1.25)

    def test_rsi_uptrend(self):
        """Only gains push RSI toward 100"""
        series = pd.Series(1.1 + np.arange(100) * 0.0001)
        assert rsi(series, 14).iloc[-1] > 90

    def test_rsi_downtrend(self):
        """Only losses push RSI toward 0"""
        series = pd.Series(1.1 - np.arange(100) * 0.0001)
        assert rsi(series, 14).iloc[-1] < 10

    def test_atr_constant_range(self):
        """Fixed bar range gives that range as ATR"""
        assert atr(trend_frame(100), 14).iloc[-1] == pytest.approx(0.0010)

    def test_atr_exponential_smoothing(self):
        """A wide bar moves ATR by 2 / (period + 1) of the jump"""
        df = pd.DataFrame({
            'high': [1.1005] * 20 + [1.1020],
            'low': [1.0995] * 20 + [1.0980],
            'close': [1.1000] * 21,
        })
        assert atr(df, 14).iloc[-1] == pytest.approx(0.0014)


class TestBuildSnapshot:
    """Tests for MarketSnapshot construction"""

    @pytest.fixture
    def snapshot(self):
        ltf = trend_frame(300)
        htf = trend_frame(100, freq="4h")
        return build_snapshot(ltf, htf, get_profile("H1"), bid=1.1300, ask=1.1301)

    def test_last_bar_values(self, snapshot):
        """Prices come from the last closed bar"""
        assert snapshot.close == pytest.approx(1.1299)
        assert snapshot.high == pytest.approx(1.1304)
        assert snapshot.bid == 1.1300
        assert snapshot.ask == 1.1301
        assert snapshot.time == pd.Timestamp("2026-01-13 11:00", tz="UTC").to_pydatetime()

    def test_uptrend_ordering(self, snapshot):
        """Faster EMAs lead in an uptrend"""
        assert snapshot.close > snapshot.ema_short > snapshot.ema_mid > snapshot.ema_long
        assert snapshot.ema_short > snapshot.ema_short_prev
        assert snapshot.htf_close > snapshot.htf_ema
        assert snapshot.rsi > 50
        assert snapshot.atr == pytest.approx(0.0010)

    def test_recent_windows(self, snapshot):
        """Pullback lookback and swing extremes"""
        assert len(snapshot.recent_highs) == 3
        assert len(snapshot.recent_lows) == 3
        assert len(snapshot.recent_ema_short) == 3
        assert snapshot.recent_ema_short[-1] == snapshot.ema_short
        assert snapshot.swing_high == pytest.approx(1.1304)
        assert snapshot.swing_low == pytest.approx(1.1295 - 0.0005)

    def test_too_few_bars(self):
        """Short history is rejected"""
        with pytest.raises(ValueError):
            build_snapshot(trend_frame(3), trend_frame(10), DAILY_PROFILE)

    def test_capitalized_columns(self):
        """Open/High/Low/Close column names are accepted"""
        ltf = trend_frame(60).rename(columns=str.capitalize)
        snapshot = build_snapshot(ltf, trend_frame(60), get_profile("W1"))
        assert snapshot.close == pytest.approx(1.1059)


class TestBuildTick:
    """Tests for Tick construction"""

    def test_forming_bar_extended_by_bid(self):
        """Bid beyond the bar extends its extremes"""
        tick = build_tick(trend_frame(50), bid=1.1060, ask=1.1061)
        assert tick.bar_high == pytest.approx(1.1060)
        assert tick.bar_low == pytest.approx(1.1049 - 0.0005)
        assert tick.atr == pytest.approx(0.0010)
        assert tick.spread == pytest.approx(0.0001)

    def test_single_bar(self):
        """One bar has no ATR yet"""
        tick = build_tick(trend_frame(1), bid=1.1000, ask=1.1001)
        assert tick.atr == 0.0


class TestTimeframeProfiles:
    """Tests for timeframe profiles and the higher timeframe map"""

    def test_h1_profile(self):
        """Hourly indicator periods"""
        profile = get_profile("H1")
        assert (profile.ema_short, profile.ema_mid, profile.ema_long) == (21, 50, 200)
        assert profile.rsi == 14

    def test_h4_rsi(self):
        """Four-hour uses a slower RSI"""
        assert get_profile(Timeframe.H4).rsi == 21

    def test_unknown_falls_back_to_daily(self):
        """Unknown names get the daily profile"""
        assert get_profile("H2") is DAILY_PROFILE

    def test_higher_timeframe(self):
        """Next timeframe up"""
        assert higher_timeframe("H1") is Timeframe.H4
        assert higher_timeframe("d1") is Timeframe.W1
        assert higher_timeframe("MN1") is Timeframe.W1

    def test_parse(self):
        """Case-insensitive parsing"""
        assert Timeframe.parse("m15") is Timeframe.M15
        with pytest.raises(ValueError):
            Timeframe.parse("X9")

    def test_warmup(self):
        """Warmup covers the slowest indicator"""
        assert get_profile("H1").warmup_bars == 201


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
