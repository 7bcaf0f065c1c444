"""Strategy Runtime Unit Tests
==============================

Tests for the per-instrument event loop: startup restore, sync grace
period, bar-close ordering and broker-side closures.

Author: PyramidTrend Team
"""
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import load_config
from pyramid_trend.data.models import AccountState, Direction
from pyramid_trend.trading.protection_engine import BreakEvenBufferMode
from pyramid_trend.trading.pyramid_group import PyramidGroup
from pyramid_trend.trading.strategy_runtime import RuntimeState, StrategyRuntime
from tests.fakes import (
    LABEL,
    RecordingExecution,
    bearish_snapshot,
    broker_record,
    make_instrument,
    make_tick,
)


ACCOUNT = AccountState(balance=10000)


@pytest.fixture
def execution():
    return RecordingExecution()


def make_runtime(execution, ticks_to_wait=0):
    return StrategyRuntime(make_instrument(), execution, ticks_to_wait=ticks_to_wait)


class TestLifecycle:
    """Tests for start, stop and the sync grace period"""

    def test_idle_before_start(self, execution):
        """Events before start are ignored"""
        runtime = make_runtime(execution)
        assert runtime.state is RuntimeState.IDLE
        assert runtime.on_tick(make_tick(1.1000)) == []
        result = runtime.on_bar_close(bearish_snapshot(), ACCOUNT)
        assert result.entered is None
        assert execution.calls == []

    def test_start_restores_ledger(self, execution):
        """Broker positions are tracked after start"""
        execution.add_record(broker_record(11, "Initial_Entry", stop=1.0980, target=1.1100))
        runtime = make_runtime(execution)
        report = runtime.start()

        assert report.restored == [11]
        assert 11 in runtime.ledger
        assert runtime.is_synced

    def test_start_failure_stays_idle(self, execution):
        """Listing failure leaves the runtime idle so start can be retried"""
        execution.fail_actions.add("list_open")
        runtime = make_runtime(execution)
        assert runtime.start() is None
        assert runtime.state is RuntimeState.IDLE

        execution.fail_actions.clear()
        assert runtime.start() is not None
        assert runtime.state is RuntimeState.RUNNING

    def test_grace_period(self, execution):
        """Protection waits for the configured number of ticks"""
        execution.add_record(broker_record(11, "Initial_Entry", stop=1.0980, target=1.1100))
        runtime = make_runtime(execution, ticks_to_wait=3)
        runtime.start()
        assert runtime.state is RuntimeState.SYNCING

        tick = make_tick(1.1015, atr=0.0010)
        for _ in range(3):
            assert runtime.on_tick(tick) == []
        assert runtime.state is RuntimeState.RUNNING
        assert execution.calls_for("modify_stop") == []

        actions = runtime.on_tick(tick)
        assert [a.kind for a in actions] == ["break_even"]
        assert runtime.ledger.get(11).break_even_applied

    def test_stop(self, execution):
        """Stopped runtime ignores ticks"""
        runtime = make_runtime(execution)
        runtime.start()
        runtime.stop()
        assert runtime.on_tick(make_tick(1.1000)) == []

    def test_status(self, execution):
        """Status summary lists tracked steps"""
        execution.add_record(broker_record(11, "Initial_Entry", stop=1.0980, target=1.1100))
        runtime = make_runtime(execution)
        runtime.start()
        status = runtime.get_status()
        assert status['state'] == "running"
        assert status['steps'][0]['trade_id'] == 11


class TestBarClose:
    """Tests for bar-close ordering"""

    def test_reversal_before_entry(self, execution):
        """Reversed long is closed, then the short signal enters"""
        execution.fill_price = 1.0900
        execution.add_record(broker_record(11, "Initial_Entry", stop=1.0980, target=1.1100))
        runtime = make_runtime(execution)
        runtime.start()

        result = runtime.on_bar_close(bearish_snapshot(), ACCOUNT)

        assert result.reversal_closed == [11]
        assert result.entered.direction is Direction.SHORT
        kinds = [c[0] for c in execution.calls]
        assert kinds.index("close") < kinds.index("open")
        assert 11 not in runtime.ledger
        assert runtime.stats.entries == 1
        assert runtime.stats.reversal_closes == 1

    def test_bar_close_during_grace_period(self, execution):
        """Entries are evaluated while protection still waits"""
        execution.fill_price = 1.0900
        runtime = make_runtime(execution, ticks_to_wait=5)
        runtime.start()
        result = runtime.on_bar_close(bearish_snapshot(), ACCOUNT)
        assert result.entered is not None


class TestPositionClosed:
    """Tests for broker-side closure notifications"""

    @pytest.fixture
    def runtime(self, execution):
        execution.add_record(broker_record(11, "Initial_Entry", entry_price=1.1000, stop=1.1150))
        execution.add_record(broker_record(
            12, "Pyramid_Step_1", entry_price=1.1150, stop=1.1300, minutes=60
        ))
        execution.add_record(broker_record(
            13, "Pyramid_Step_2", entry_price=1.1300, stop=1.1320, target=1.1500, minutes=120
        ))
        runtime = make_runtime(execution)
        runtime.start()
        return runtime

    def test_restored_locks(self, runtime):
        """Lower steps restore as locked"""
        assert runtime.ledger.get(11).locked
        assert runtime.ledger.get(12).locked
        assert not runtime.ledger.get(13).locked

    def test_mid_group_removal(self, runtime, execution):
        """Removing a middle step keeps the other locks and indices"""
        removed = runtime.on_position_closed(12, "stop loss")
        assert removed.step_index == 1

        group = PyramidGroup.from_ledger(runtime.ledger, Direction.LONG)
        assert [s.step_index for s in group] == [0, 2]
        assert group.next_step_index == 3

        runtime.on_tick(make_tick(1.1415, bar_high=1.1420, atr=0.0010))
        step0 = runtime.ledger.get(11)
        assert step0.locked
        assert step0.locked_at_price == 1.1150
        assert step0.current_stop == 1.1150
        assert all(call[1] != 11 for call in execution.calls_for("modify_stop"))
        assert runtime.ledger.get(13).current_stop == pytest.approx(1.1410)

    def test_unknown_position(self, runtime):
        """Unknown ids are ignored"""
        assert runtime.on_position_closed(999) is None
        assert len(runtime.ledger) == 3


class TestSignalOnly:
    """Tests for running with trading disabled"""

    @pytest.fixture
    def runtime(self, execution):
        execution.fill_price = 1.0900
        execution.add_record(broker_record(11, "Initial_Entry", stop=1.0980, target=1.1100))
        runtime = StrategyRuntime(make_instrument(), execution, ticks_to_wait=0, trading_enabled=False)
        runtime.start(bearish_snapshot())
        return runtime

    def test_no_reversal_close_on_start(self, runtime, execution):
        """Restored long is kept despite the bearish snapshot"""
        assert 11 in runtime.ledger
        assert execution.calls_for("close") == []

    def test_signal_logged_not_sent(self, runtime, execution):
        """Entry is planned but no order goes out"""
        result = runtime.on_bar_close(bearish_snapshot(), ACCOUNT)

        assert result.entered is None
        assert result.reversal_closed == []
        assert result.signal.direction is Direction.SHORT
        assert execution.calls_for("open") == []
        assert execution.calls_for("close") == []
        assert runtime.stats.entries == 0

    def test_protection_still_runs(self, runtime, execution):
        """Open steps keep their tick protection"""
        actions = runtime.on_tick(make_tick(1.1015, atr=0.0010))
        assert [a.kind for a in actions] == ["break_even"]


class TestFromSettings:
    """Tests for building a runtime from configuration"""

    def test_settings_applied(self, tmp_path, execution):
        """Configured values reach every component"""
        path = tmp_path / "settings.yaml"
        path.write_text(
            "pyramid:\n"
            "  max_steps: 5\n"
            "  distance_pips: 80\n"
            "protection:\n"
            "  break_even_buffer_mode: cost_adjusted\n"
            "  partial_tp_percent: 0\n"
            "runtime:\n"
            "  ticks_to_wait: 2\n"
        )
        settings = load_config(path, use_env=False)
        runtime = StrategyRuntime.from_settings(make_instrument(), execution, settings)

        assert runtime.orchestrator.max_steps == 5
        assert runtime.orchestrator.pyramid_distance_pips == 80
        assert runtime.orchestrator.strategy_label == LABEL
        assert runtime.protection.params.break_even_buffer_mode is BreakEvenBufferMode.COST_ADJUSTED
        assert runtime.protection.params.partial_tp_percent == 0
        assert runtime.ticks_to_wait == 2
        assert runtime.reconciler.remove_target_after_pyramid
        assert not runtime.trading_enabled

    def test_trading_enabled(self, tmp_path, execution):
        """Trading switch reaches the runtime"""
        path = tmp_path / "settings.yaml"
        path.write_text("trading:\n  enabled: true\n")
        settings = load_config(path, use_env=False)
        runtime = StrategyRuntime.from_settings(make_instrument(), execution, settings)
        assert runtime.trading_enabled


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
