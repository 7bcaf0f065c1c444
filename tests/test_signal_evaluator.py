"""Signal Evaluator Unit Tests
==============================

Tests for trend bias, pullback and continuation signals.

Author: PyramidTrend Team
"""
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pyramid_trend.analysis.signal_evaluator import Bias, SignalEvaluator
from pyramid_trend.data.models import Direction
from tests.fakes import bearish_snapshot, bullish_snapshot


class TestTrendBias:
    """Tests for traded and higher timeframe bias"""

    def test_bullish_above_both_emas(self):
        """Close above mid and long EMA is bullish"""
        assert SignalEvaluator.trend_bias(bullish_snapshot()) is Bias.BULLISH

    def test_bearish_below_both_emas(self):
        """Close below mid and long EMA is bearish"""
        assert SignalEvaluator.trend_bias(bearish_snapshot()) is Bias.BEARISH

    def test_neutral_between_emas(self):
        """Close between the EMAs is neutral"""
        snapshot = bullish_snapshot(close=1.0980)
        assert SignalEvaluator.trend_bias(snapshot) is Bias.NEUTRAL

    def test_higher_tf_bias(self):
        """HTF close vs HTF EMA"""
        assert SignalEvaluator.higher_tf_bias(bullish_snapshot()) is Bias.BULLISH
        assert SignalEvaluator.higher_tf_bias(bullish_snapshot(htf_close=1.0990)) is Bias.BEARISH
        assert SignalEvaluator.higher_tf_bias(bullish_snapshot(htf_close=1.1000)) is Bias.NEUTRAL

    def test_bias_direction(self):
        """Bias maps to a trade direction"""
        assert Bias.BULLISH.direction is Direction.LONG
        assert Bias.BEARISH.direction is Direction.SHORT
        assert Bias.NEUTRAL.direction is None


class TestSetups:
    """Tests for pullback, momentum and continuation"""

    @pytest.fixture
    def evaluator(self):
        return SignalEvaluator()

    def test_pullback_band(self, evaluator):
        """Band is the wider of EMA and ATR fraction plus EMA slope"""
        snapshot = bullish_snapshot()
        expected = max(1.1040 * 0.002, 0.0010 * 0.3) + 0.0002
        assert evaluator.pullback_band(snapshot) == pytest.approx(expected)

    def test_pullback_touch_long(self, evaluator):
        """A recent low inside the band is a pullback"""
        assert evaluator.pullback_touch(bullish_snapshot(), Direction.LONG)

    def test_no_pullback_when_lows_far_above(self, evaluator):
        """Lows above the band are no pullback"""
        snapshot = bullish_snapshot(recent_lows=[1.1100, 1.1090, 1.1080])
        assert not evaluator.pullback_touch(snapshot, Direction.LONG)

    def test_pullback_touch_short(self, evaluator):
        """A recent high inside the band is a short pullback"""
        snapshot = bearish_snapshot(recent_highs=[1.0930, 1.0950, 1.0915])
        assert evaluator.pullback_touch(snapshot, Direction.SHORT)

    def test_momentum(self, evaluator):
        """RSI side of 50 and MACD histogram sign"""
        assert evaluator.momentum_confirms(bullish_snapshot(), Direction.LONG)
        assert not evaluator.momentum_confirms(bullish_snapshot(rsi=48.0), Direction.LONG)
        assert not evaluator.momentum_confirms(bullish_snapshot(macd_hist=-0.0001), Direction.LONG)
        assert evaluator.momentum_confirms(bearish_snapshot(), Direction.SHORT)

    def test_strong_continuation_long(self, evaluator):
        """RSI > 60, positive MACD and displaced close"""
        snapshot = bullish_snapshot(close=1.1100, rsi=65.0)
        assert evaluator.strong_continuation(snapshot, Direction.LONG)

    def test_strong_continuation_needs_displacement(self, evaluator):
        """Close near the short EMA is no continuation"""
        snapshot = bullish_snapshot(rsi=65.0)
        assert not evaluator.strong_continuation(snapshot, Direction.LONG)

    def test_strong_continuation_short(self, evaluator):
        """Mirrored short continuation"""
        assert evaluator.strong_continuation(bearish_snapshot(), Direction.SHORT)


class TestEvaluate:
    """Tests for the combined reading"""

    @pytest.fixture
    def evaluator(self):
        return SignalEvaluator()

    def test_aligned_long_pullback_signal(self, evaluator):
        """Aligned uptrend with pullback and momentum enters long"""
        reading = evaluator.evaluate(bullish_snapshot())
        assert reading.aligned_direction is Direction.LONG
        assert reading.pullback_touch
        assert reading.momentum_ok
        assert reading.entry_signal

    def test_aligned_short_continuation_signal(self, evaluator):
        """Strong continuation enters without a pullback"""
        reading = evaluator.evaluate(bearish_snapshot())
        assert reading.aligned_direction is Direction.SHORT
        assert not reading.pullback_touch
        assert reading.strong_continuation
        assert reading.entry_signal

    def test_misaligned_higher_timeframe(self, evaluator):
        """HTF disagreement blocks entries"""
        reading = evaluator.evaluate(bullish_snapshot(htf_close=1.0990))
        assert reading.aligned_direction is None
        assert not reading.entry_signal

    def test_neutral_trend_has_no_setup(self, evaluator):
        """Neutral bias leaves all setup flags off"""
        reading = evaluator.evaluate(bullish_snapshot(close=1.0980))
        assert reading.bias is Bias.NEUTRAL
        assert not reading.pullback_touch
        assert not reading.entry_signal

    def test_no_pullback_no_continuation(self, evaluator):
        """Aligned trend alone is not an entry"""
        snapshot = bullish_snapshot(recent_lows=[1.1100, 1.1090, 1.1080])
        reading = evaluator.evaluate(snapshot)
        assert reading.aligned_direction is Direction.LONG
        assert not reading.entry_signal

    def test_describe(self, evaluator):
        """Condition line mentions signal and indicators"""
        snapshot = bullish_snapshot()
        text = evaluator.describe(evaluator.evaluate(snapshot), snapshot)
        assert "BUY signal" in text
        assert "RSI 55.0" in text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
