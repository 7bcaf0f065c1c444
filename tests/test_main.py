"""Main Runner Unit Tests
========================

Tests for the polling runner's startup checks and bar tracking, with the
MetaTrader5 module and the connector replaced by mocks.

Author: PyramidTrend Team
"""
import importlib
import pytest
from unittest.mock import MagicMock, patch

import pandas as pd

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tests.fakes import SYMBOL


@pytest.fixture
def main_module(monkeypatch):
    fake = MagicMock(name="MetaTrader5")
    with patch.dict(sys.modules, {"MetaTrader5": fake}):
        sys.modules.pop("pyramid_trend.data.mt5_connector", None)
        sys.modules.pop("main", None)
        module = importlib.import_module("main")
        monkeypatch.setattr(module, "setup_logger", MagicMock())
        yield module


@pytest.fixture
def app(main_module):
    app = main_module.PyramidTrend(mode="demo")
    app.mt5 = MagicMock()
    return app


def closed_bar(time: str) -> pd.DataFrame:
    index = pd.DatetimeIndex([pd.Timestamp(time, tz="UTC")])
    return pd.DataFrame({'open': [1.1], 'high': [1.1], 'low': [1.1], 'close': [1.1]}, index=index)


def mock_runtime():
    runtime = MagicMock()
    runtime.symbol = SYMBOL
    runtime.ledger.steps.return_value = []
    return runtime


class TestInitialize:
    """Tests for startup checks"""

    def test_demo_mode_on_real_account(self, app):
        """Demo mode refuses a real account before any symbol is set up"""
        app.mt5.connect.return_value = True
        app.mt5.is_demo_account.return_value = False

        assert not app.initialize()
        app.mt5.instrument.assert_not_called()

    def test_history_covers_warmup(self, main_module, monkeypatch):
        """Too short a history request is raised to the profile warmup"""
        monkeypatch.setattr(main_module.config.trading, "timeframe", "M1")
        monkeypatch.setattr(main_module.config.runtime, "history_bars", 100)
        app = main_module.PyramidTrend(mode="demo")
        assert app.history_bars == 1201


class TestBarTracking:
    """Tests for new bar detection"""

    def test_start_without_snapshot_seeds_last_bar(self, app):
        """The bar closed before start does not trigger a bar close"""
        app._snapshot = MagicMock(return_value=None)
        app.mt5.get_ohlcv.return_value = closed_bar("2026-01-05 10:00")
        app.mt5.open_tickets.return_value = set()
        app.mt5.get_tick.return_value = None
        runtime = mock_runtime()

        app._start(runtime)
        assert app._last_bar[SYMBOL] == pd.Timestamp("2026-01-05 10:00", tz="UTC")

        app._process_symbol(runtime)
        runtime.on_bar_close.assert_not_called()

    def test_next_bar_triggers_bar_close(self, app):
        """A newer closed bar is processed once"""
        app._last_bar[SYMBOL] = pd.Timestamp("2026-01-05 10:00", tz="UTC")
        snapshot = MagicMock(time=pd.Timestamp("2026-01-05 11:00", tz="UTC"))
        app._snapshot = MagicMock(return_value=snapshot)
        app.mt5.get_ohlcv.return_value = closed_bar("2026-01-05 11:00")
        app.mt5.open_tickets.return_value = set()
        app.mt5.get_tick.return_value = None
        runtime = mock_runtime()

        app._process_symbol(runtime)
        app._process_symbol(runtime)

        runtime.on_bar_close.assert_called_once()
        assert app._last_bar[SYMBOL] == snapshot.time

    def test_failed_start_leaves_bar_unset(self, app):
        """No restore, no bar bookkeeping"""
        app._snapshot = MagicMock(return_value=None)
        runtime = mock_runtime()
        runtime.start.return_value = None

        app._start(runtime)
        assert SYMBOL not in app._last_bar


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
