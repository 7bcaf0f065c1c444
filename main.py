"""PyramidTrend Main Runner
==========================

Pyramiding trend-following strategy on MetaTrader 5:
1. Restore open steps from the terminal (reversal check first)
2. Every poll: broker closures -> bar close (reversal, entries) -> tick protection
3. One StrategyRuntime and ledger per symbol

Usage:
    python main.py [--demo | --live] [--symbol EURUSD,GBPUSD] [--interval 1.0]

Author: PyramidTrend Team
"""
import asyncio
import sys
from pathlib import Path
from typing import Dict, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from loguru import logger
from config import config
from pyramid_trend.analysis.indicators import build_snapshot, build_tick
from pyramid_trend.analysis.timeframe_profiles import get_profile, higher_timeframe
from pyramid_trend.data.models import MarketSnapshot
from pyramid_trend.data.mt5_connector import MT5Connector
from pyramid_trend.trading.errors import ExecutionFailed
from pyramid_trend.trading.position_ledger import LedgerBook
from pyramid_trend.trading.strategy_runtime import RuntimeState, StrategyRuntime
from pyramid_trend.utils.logger import setup_logger

HTF_BARS = 300


class PyramidTrend:
    """Main PyramidTrend Application"""

    def __init__(self, mode: str = "demo", verbose: bool = False, symbols: Optional[str] = None):
        """Initialize PyramidTrend

        Args:
            mode: Trading mode ('demo', 'live')
            verbose: Enable verbose logging
            symbols: Comma separated symbols overriding the configuration
        """
        self.mode = mode
        if symbols:
            config.trading.symbol = symbols

        setup_logger(
            log_level="DEBUG" if verbose else config.logging.level,
            log_file=config.logging.file,
            json_format=config.logging.json_format,
            console=True
        )

        logger.info("=" * 60)
        logger.info(f"PyramidTrend Starting - Mode: {mode.upper()}")
        logger.info("=" * 60)

        self.mt5 = MT5Connector(
            login=config.mt5.login,
            password=config.mt5.password,
            server=config.mt5.server,
            terminal_path=config.mt5.terminal_path
        )

        self.timeframe = config.trading.timeframe
        self.htf = higher_timeframe(self.timeframe).value
        self.profile = get_profile(self.timeframe)
        self.history_bars = max(config.runtime.history_bars, self.profile.warmup_bars)
        if self.history_bars > config.runtime.history_bars:
            logger.warning(
                f"history_bars raised to {self.history_bars} to warm up {self.timeframe} indicators"
            )

        self.ledgers = LedgerBook()
        self.runtimes: Dict[str, StrategyRuntime] = {}
        self._last_bar: Dict[str, object] = {}
        self._running = False

    def initialize(self) -> bool:
        """Connect and build one runtime per symbol

        Returns:
            True if successful
        """
        logger.info("Initializing components...")

        if not self.mt5.connect():
            logger.error("Failed to connect to MT5")
            return False

        if self.mode == "demo" and not self.mt5.is_demo_account():
            logger.error("Demo mode on a real account, use --live to trade it")
            return False

        if not config.trading.enabled:
            logger.warning("Trading disabled (TRADING_ENABLED=false): signals are logged only")

        for symbol in config.trading.symbols:
            try:
                instrument = self.mt5.instrument(symbol)
            except ExecutionFailed as e:
                logger.error(f"Skipping {symbol}: {e}")
                continue

            runtime = StrategyRuntime.from_settings(
                instrument, self.mt5, config, ledger=self.ledgers.for_symbol(symbol)
            )
            self.runtimes[symbol] = runtime
            self._start(runtime)

        if not self.runtimes:
            logger.error("No tradable symbols")
            return False

        logger.info(f"Initialization complete: {', '.join(self.runtimes)} on {self.timeframe} (HTF {self.htf})")
        return True

    def _snapshot(self, symbol: str) -> Optional[MarketSnapshot]:
        """Snapshot as of the last closed bar"""
        ltf = self.mt5.get_ohlcv(symbol, self.timeframe, self.history_bars, start_pos=1)
        htf = self.mt5.get_ohlcv(symbol, self.htf, HTF_BARS, start_pos=1)
        tick = self.mt5.get_tick(symbol)
        if ltf is None or htf is None or tick is None:
            return None
        return build_snapshot(ltf, htf, self.profile, bid=tick["bid"], ask=tick["ask"])

    def _start(self, runtime: StrategyRuntime):
        symbol = runtime.symbol
        snapshot = self._snapshot(symbol)
        if snapshot is None:
            logger.warning(f"{symbol}: no market data yet, restoring without reversal check")
        if runtime.start(snapshot) is None:
            return

        # The bar closed before start is never treated as a new bar
        if snapshot is not None:
            self._last_bar[symbol] = snapshot.time
        else:
            last_closed = self.mt5.get_ohlcv(symbol, self.timeframe, 1, start_pos=1)
            if last_closed is not None:
                self._last_bar[symbol] = last_closed.index[-1]

    def _process_symbol(self, runtime: StrategyRuntime):
        symbol = runtime.symbol

        if runtime.state is RuntimeState.IDLE:
            self._start(runtime)
            return

        # Broker-side closures (SL, TP, manual)
        open_tickets = self.mt5.open_tickets(runtime.orchestrator.strategy_label, symbol)
        for step in runtime.ledger.steps():
            if step.trade_id not in open_tickets:
                runtime.on_position_closed(step.trade_id, "closed by broker")

        # New closed bar
        last_closed = self.mt5.get_ohlcv(symbol, self.timeframe, 1, start_pos=1)
        if last_closed is not None and last_closed.index[-1] != self._last_bar.get(symbol):
            snapshot = self._snapshot(symbol)
            if snapshot is not None:
                self._last_bar[symbol] = snapshot.time
                account = self.mt5.account_state(symbol)
                runtime.on_bar_close(snapshot, account)

        # Tick protection
        tick = self.mt5.get_tick(symbol)
        forming = self.mt5.get_ohlcv(symbol, self.timeframe, self.profile.atr * 10, start_pos=0)
        if tick is None or forming is None:
            logger.warning(f"{symbol}: failed to get tick")
            return
        runtime.on_tick(build_tick(forming, tick["bid"], tick["ask"], self.profile.atr, tick["time"]))

    async def run(self, interval_seconds: float = 1.0):
        """Main run loop

        Args:
            interval_seconds: Polling interval
        """
        self._running = True
        try:
            while self._running:
                for runtime in self.runtimes.values():
                    with logger.contextualize(symbol=runtime.symbol):
                        try:
                            self._process_symbol(runtime)
                        except ExecutionFailed as e:
                            logger.warning(f"{runtime.symbol}: {e}")
                        except Exception as e:
                            logger.error(f"Error in main loop ({runtime.symbol}): {e}")

                await asyncio.sleep(interval_seconds)

        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Interrupted by user")
        finally:
            self.shutdown()

    def shutdown(self):
        """Cleanup and shutdown"""
        logger.info("Shutting down...")
        self._running = False
        for runtime in self.runtimes.values():
            status = runtime.get_status()
            logger.info(
                f"{status['symbol']}: {status['entries']} entries, "
                f"{status['reversal_closes']} reversal closes, {len(status['steps'])} steps open"
            )
            runtime.stop()
        self.mt5.disconnect()
        logger.info("Shutdown complete")


async def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="PyramidTrend Trading System")
    parser.add_argument("--demo", action="store_true", help="Run in demo mode")
    parser.add_argument("--live", action="store_true", help="Run in live mode")
    parser.add_argument("--symbol", type=str, default=None, help="Symbols, comma separated")
    parser.add_argument("--interval", type=float, default=config.runtime.poll_interval,
                        help="Polling interval (seconds)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    if args.live:
        mode = "live"
    elif args.demo:
        mode = "demo"
    else:
        mode = config.trading.mode

    app = PyramidTrend(mode=mode, verbose=args.verbose, symbols=args.symbol)

    if not app.initialize():
        logger.error("Initialization failed")
        return

    await app.run(interval_seconds=args.interval)


if __name__ == "__main__":
    asyncio.run(main())
