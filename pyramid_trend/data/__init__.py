"""Data Layer Module

Components:
- Direction, InstrumentSpec, AccountState: broker/account value objects
- MarketSnapshot, Tick: market state handed to the engine

The MetaTrader 5 adapter lives in `pyramid_trend.data.mt5_connector` and is
imported explicitly (MetaTrader5 is an optional dependency).
"""

from .models import AccountState, Direction, InstrumentSpec, MarketSnapshot, Tick

__all__ = [
    "AccountState",
    "Direction",
    "InstrumentSpec",
    "MarketSnapshot",
    "Tick",
]
