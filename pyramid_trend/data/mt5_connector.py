"""MetaTrader 5 Connector
========================

Execution client and market data source backed by the MetaTrader5
terminal API. All calls are synchronous; rejected requests raise
ExecutionFailed so the engine leaves its ledger untouched.

MT5 has no position label, so the strategy label is mapped to a magic
number; the step tag travels in the order comment (max 31 chars).

Author: PyramidTrend Team
"""
import zlib
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, List, Optional, Set

import MetaTrader5 as mt5
import pandas as pd
from loguru import logger

from ..trading.errors import ExecutionFailed
from ..trading.execution import OrderResult, TradeRecord
from .models import AccountState, Direction, InstrumentSpec


MAX_COMMENT_LENGTH = 31
DEVIATION_POINTS = 20


def label_to_magic(label: str) -> int:
    """Stable magic number for a strategy label"""
    return zlib.crc32(label.encode("utf-8")) & 0x7FFFFFFF


class MT5Connector:
    """MetaTrader 5 execution client"""

    # MT5 Timeframe constants mapping
    TIMEFRAMES = {
        "M1": mt5.TIMEFRAME_M1,
        "M5": mt5.TIMEFRAME_M5,
        "M15": mt5.TIMEFRAME_M15,
        "M30": mt5.TIMEFRAME_M30,
        "H1": mt5.TIMEFRAME_H1,
        "H4": mt5.TIMEFRAME_H4,
        "D1": mt5.TIMEFRAME_D1,
        "W1": mt5.TIMEFRAME_W1,
        "MN1": mt5.TIMEFRAME_MN1,
    }

    SUCCESS_RETCODES = {mt5.TRADE_RETCODE_DONE, 1}

    def __init__(
        self,
        terminal_path: Optional[str] = None,
        login: Optional[int] = None,
        password: Optional[str] = None,
        server: Optional[str] = None
    ):
        """Initialize MT5 Connector

        Args:
            terminal_path: Path to MT5 terminal executable
            login: MT5 account login
            password: MT5 account password
            server: MT5 server name
        """
        self.terminal_path = terminal_path
        self.login = login
        self.password = password
        self.server = server
        self.connected = False
        self._last_error = None

    # =========================================================================
    # CONNECTION
    # =========================================================================

    def connect(self) -> bool:
        """Initialize MT5 connection

        Tries the already logged-in terminal first, then the terminal path,
        then full credentials.

        Returns:
            True if connection successful, False otherwise
        """
        attempts = [{}]
        if self.terminal_path:
            attempts.append({"path": self.terminal_path})
        if self.login and self.password:
            init_args = {"login": self.login, "password": self.password}
            if self.server:
                init_args["server"] = self.server
            if self.terminal_path:
                init_args["path"] = self.terminal_path
            attempts.append(init_args)

        for init_args in attempts:
            if mt5.initialize(**init_args):
                self.connected = True
                terminal_info = mt5.terminal_info()
                account_info = mt5.account_info()
                logger.info(f"MT5 connected: {terminal_info.name} - Build {terminal_info.build}")
                if account_info:
                    logger.info(f"Account: {account_info.login} ({account_info.server})")
                return True

        self._last_error = mt5.last_error()
        logger.error(f"MT5 initialization failed: {self._last_error}")
        return False

    def disconnect(self) -> None:
        """Shutdown MT5 connection"""
        if self.connected:
            mt5.shutdown()
            self.connected = False
            logger.info("MT5 disconnected")

    def is_demo_account(self) -> bool:
        """True when the logged-in account is a demo account"""
        info = mt5.account_info()
        return info is not None and info.trade_mode == mt5.ACCOUNT_TRADE_MODE_DEMO

    def ensure_connected(self) -> bool:
        """Ensure MT5 is connected, reconnect if needed"""
        if not self.connected:
            return self.connect()

        if mt5.terminal_info() is None:
            self.connected = False
            return self.connect()
        return True

    def _require_connection(self, action: str):
        if not self.ensure_connected():
            raise ExecutionFailed(action, f"MT5 not connected ({self._last_error})")

    # =========================================================================
    # MARKET DATA
    # =========================================================================

    def instrument(self, symbol: str) -> InstrumentSpec:
        """Broker properties of a symbol

        Raises:
            ExecutionFailed: if the symbol is unknown to the terminal
        """
        self._require_connection("symbol_info")
        info = mt5.symbol_info(symbol)
        if info is None:
            raise ExecutionFailed("symbol_info", f"{symbol} not found")

        # 5/3 digit quotes: one pip is ten points
        pip_size = info.point * 10 if info.digits in (3, 5) else info.point
        tick_size = info.trade_tick_size or info.point
        pip_value = info.trade_tick_value * (pip_size / tick_size) if tick_size else 0.0

        return InstrumentSpec(
            symbol=symbol,
            pip_size=pip_size,
            tick_size=tick_size,
            pip_value=pip_value,
            min_volume=info.volume_min,
            volume_step=info.volume_step,
            max_volume=info.volume_max,
            min_stop_distance_pips=info.trade_stops_level * info.point / pip_size
        )

    def account_state(self, symbol: str) -> AccountState:
        """Balance, free margin and margin per minimum lot"""
        self._require_connection("account_info")
        info = mt5.account_info()
        if info is None:
            raise ExecutionFailed("account_info", str(mt5.last_error()))

        margin_per_min_lot = 0.0
        symbol_info = mt5.symbol_info(symbol)
        tick = mt5.symbol_info_tick(symbol)
        if symbol_info is not None and tick is not None:
            margin = mt5.order_calc_margin(
                mt5.ORDER_TYPE_BUY, symbol, symbol_info.volume_min, tick.ask
            )
            if margin is not None:
                margin_per_min_lot = margin

        return AccountState(
            balance=info.balance,
            free_margin=info.margin_free,
            margin_per_min_lot=margin_per_min_lot,
            currency=info.currency
        )

    def get_tick(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Latest bid/ask for a symbol"""
        if not self.ensure_connected():
            return None

        tick = mt5.symbol_info_tick(symbol)
        if tick is None:
            return None

        return {
            "symbol": symbol,
            "bid": tick.bid,
            "ask": tick.ask,
            "time": datetime.fromtimestamp(tick.time, tz=timezone.utc),
        }

    def get_ohlcv(
        self,
        symbol: str,
        timeframe: str = "H1",
        bars: int = 300,
        start_pos: int = 0
    ) -> Optional[pd.DataFrame]:
        """Get OHLCV (candlestick) data

        Args:
            symbol: Trading symbol
            timeframe: Timeframe string (M1, M5, M15, M30, H1, H4, D1, W1, MN1)
            bars: Number of bars to retrieve
            start_pos: Starting position (0 = forming bar, 1 = last closed bar)

        Returns:
            DataFrame indexed by bar time with open/high/low/close/volume,
            or None if error
        """
        if not self.ensure_connected():
            return None

        tf = self.TIMEFRAMES.get(timeframe, mt5.TIMEFRAME_H1)
        rates = mt5.copy_rates_from_pos(symbol, tf, start_pos, bars)

        if rates is None or len(rates) == 0:
            logger.warning(f"Failed to get OHLCV for {symbol} {timeframe}")
            return None

        df = pd.DataFrame(rates)
        df['time'] = pd.to_datetime(df['time'], unit='s', utc=True)
        df.set_index('time', inplace=True)
        df.rename(columns={'tick_volume': 'volume'}, inplace=True)
        return df[['open', 'high', 'low', 'close', 'volume']]

    # =========================================================================
    # EXECUTION CLIENT
    # =========================================================================

    def open(
        self,
        symbol: str,
        direction: Direction,
        volume: float,
        stop: Optional[float],
        target: Optional[float],
        label: str,
        comment: str
    ) -> OrderResult:
        """Market order

        Raises:
            ExecutionFailed: on rejection
        """
        self._require_connection("open")

        tick = mt5.symbol_info_tick(symbol)
        if tick is None:
            raise ExecutionFailed("open", f"no tick for {symbol}")

        if direction is Direction.LONG:
            price = tick.ask
            mt5_type = mt5.ORDER_TYPE_BUY
        else:
            price = tick.bid
            mt5_type = mt5.ORDER_TYPE_SELL

        # MT5 comment field is limited to 31 characters
        if len(comment) > MAX_COMMENT_LENGTH:
            logger.warning(f"Order comment truncated: '{comment}' -> '{comment[:MAX_COMMENT_LENGTH]}'")
            comment = comment[:MAX_COMMENT_LENGTH]

        request = {
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": symbol,
            "volume": volume,
            "type": mt5_type,
            "price": price,
            "deviation": DEVIATION_POINTS,
            "magic": label_to_magic(label),
            "comment": comment,
            "type_time": mt5.ORDER_TIME_GTC,
        }
        if stop:
            request["sl"] = stop
        if target:
            request["tp"] = target

        result = self._send_with_filling_fallback(request, symbol)
        fill_price = result.price or price

        logger.debug(f"Order placed: {direction.value} {volume} {symbol} @ {fill_price} ({comment})")
        return OrderResult(
            trade_id=result.order,
            fill_price=fill_price,
            volume=result.volume or volume,
            message=result.comment
        )

    def _send_with_filling_fallback(self, request: Dict[str, Any], symbol: str):
        # Preferred filling type from symbol info, then the others
        symbol_info = mt5.symbol_info(symbol)
        preferred = mt5.ORDER_FILLING_IOC
        if symbol_info is not None:
            if symbol_info.filling_mode & 1:
                preferred = mt5.ORDER_FILLING_FOK
            elif symbol_info.filling_mode & 2:
                preferred = mt5.ORDER_FILLING_IOC
            else:
                preferred = mt5.ORDER_FILLING_RETURN

        filling_types = [preferred]
        for ft in [mt5.ORDER_FILLING_FOK, mt5.ORDER_FILLING_IOC, mt5.ORDER_FILLING_RETURN]:
            if ft not in filling_types:
                filling_types.append(ft)

        result = None
        for ft in filling_types:
            request["type_filling"] = ft
            result = mt5.order_send(request)

            if result is None:
                logger.error(f"Order send returned None (filling={ft}): {mt5.last_error()}")
                continue

            if result.retcode in self.SUCCESS_RETCODES:
                return result

            # AutoTrading disabled in MT5 terminal
            if result.retcode == 10027:
                raise ExecutionFailed("open", "AutoTrading is disabled in the MT5 terminal")

            # Only filling errors are worth another filling type
            if result.retcode not in (10030, 10033):
                raise ExecutionFailed("open", f"retcode={result.retcode} {result.comment}")

        raise ExecutionFailed(
            "open",
            f"all filling types rejected (retcode={result.retcode if result else 'None'})"
        )

    def _position(self, ticket: Hashable, action: str):
        positions = mt5.positions_get(ticket=int(ticket))
        if not positions:
            raise ExecutionFailed(action, f"position {ticket} not found")
        return positions[0]

    def _modify(self, ticket: Hashable, action: str, sl: Optional[float], tp: Optional[float]):
        self._require_connection(action)
        position = self._position(ticket, action)

        request = {
            "action": mt5.TRADE_ACTION_SLTP,
            "symbol": position.symbol,
            "position": int(ticket),
            "sl": position.sl if sl is None else sl,
            "tp": position.tp if tp is None else tp,
        }
        result = mt5.order_send(request)

        if result is None or result.retcode != mt5.TRADE_RETCODE_DONE:
            cause = mt5.last_error() if result is None else f"retcode={result.retcode} {result.comment}"
            raise ExecutionFailed(action, str(cause))

    def modify_stop(self, trade_id: Hashable, stop: float) -> None:
        self._modify(trade_id, "modify_stop", sl=stop, tp=None)

    def modify_target(self, trade_id: Hashable, target: Optional[float]) -> None:
        # tp = 0.0 removes the target
        self._modify(trade_id, "modify_target", sl=None, tp=0.0 if target is None else target)

    def close(self, trade_id: Hashable, volume: Optional[float] = None) -> None:
        """Close a position in full, or the given volume of it"""
        self._require_connection("close")
        position = self._position(trade_id, "close")

        tick = mt5.symbol_info_tick(position.symbol)
        if tick is None:
            raise ExecutionFailed("close", f"no tick for {position.symbol}")

        if position.type == mt5.POSITION_TYPE_BUY:
            price = tick.bid
            order_type = mt5.ORDER_TYPE_SELL
        else:
            price = tick.ask
            order_type = mt5.ORDER_TYPE_BUY

        close_volume = position.volume if volume is None or volume >= position.volume else volume

        request = {
            "action": mt5.TRADE_ACTION_DEAL,
            "symbol": position.symbol,
            "volume": close_volume,
            "type": order_type,
            "position": int(trade_id),
            "price": price,
            "deviation": DEVIATION_POINTS,
            "magic": position.magic,
            "comment": "PyramidTrend Close",
            "type_time": mt5.ORDER_TIME_GTC,
            "type_filling": mt5.ORDER_FILLING_IOC,
        }
        result = mt5.order_send(request)

        if result is None or result.retcode != mt5.TRADE_RETCODE_DONE:
            cause = mt5.last_error() if result is None else f"retcode={result.retcode} {result.comment}"
            raise ExecutionFailed("close", str(cause))

        logger.debug(f"Position {trade_id} closed {close_volume} @ {price}")

    def list_open(self, label: str, symbol: str) -> List[TradeRecord]:
        """Open positions of a strategy label on a symbol

        Raises:
            ExecutionFailed: if the terminal cannot be queried
        """
        self._require_connection("list_open")
        positions = mt5.positions_get(symbol=symbol)
        if positions is None:
            raise ExecutionFailed("list_open", str(mt5.last_error()))

        magic = label_to_magic(label)
        return [self._position_to_record(p, label) for p in positions if p.magic == magic]

    def open_tickets(self, label: str, symbol: str) -> Set[Hashable]:
        """Tickets currently open, used to detect closures"""
        return {record.trade_id for record in self.list_open(label, symbol)}

    def _position_to_record(self, position, label: str) -> TradeRecord:
        """Convert MT5 position to TradeRecord"""
        return TradeRecord(
            trade_id=position.ticket,
            symbol=position.symbol,
            direction=Direction.LONG if position.type == mt5.POSITION_TYPE_BUY else Direction.SHORT,
            volume=position.volume,
            entry_price=position.price_open,
            stop=position.sl or None,
            target=position.tp or None,
            comment=getattr(position, 'comment', ''),
            label=label,
            opened_at=datetime.fromtimestamp(position.time, tz=timezone.utc)
        )

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False
