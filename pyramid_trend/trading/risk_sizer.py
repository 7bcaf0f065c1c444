"""Risk Sizer - Risk-Based Position Sizing
==========================================

Converts a stop distance and an account risk budget into an executable
volume:

    risk_amount      = balance * risk_percent / 100
    risk_per_min_lot = stop_pips * pip value of one minimum lot
    raw_volume       = floor(risk_amount / risk_per_min_lot) * min_volume
    margin_cap       = floor(free_margin / margin_per_min_lot) * min_volume
    volume           = max(min_volume, min(raw_volume, margin_cap))

then floored to the broker volume step. A degenerate stop (zero distance)
falls back to the minimum volume.

Also places the initial stop/target from ATR and the recent swing.

Author: PyramidTrend Team
"""
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from loguru import logger

from ..data.models import AccountState, Direction, InstrumentSpec
from .errors import SizingBelowMinimum


@dataclass
class SizingResult:
    """Risk calculation result"""
    volume: float
    risk_amount: float
    risk_percent: float
    stop_pips: float
    margin_capped: bool = False


class RiskSizer:
    """Risk-percent position sizing with margin cap"""

    def __init__(
        self,
        sl_atr_multiplier: float = 1.5,
        tp_atr_multiplier: float = 2.5,
        swing_buffer_atr: float = 0.25
    ):
        """Initialize Risk Sizer

        Args:
            sl_atr_multiplier: ATR multiple for the stop distance
            tp_atr_multiplier: ATR multiple for the target distance
            swing_buffer_atr: ATR fraction kept beyond the swing extreme
        """
        self.sl_atr_multiplier = sl_atr_multiplier
        self.tp_atr_multiplier = tp_atr_multiplier
        self.swing_buffer_atr = swing_buffer_atr

    def size(
        self,
        account_balance: float,
        risk_percent: float,
        stop_distance_price: float,
        pip_value: float,
        min_volume: float,
        free_margin: float = float("inf"),
        margin_per_min_lot: float = 0.0,
        pip_size: float = 0.0001,
        volume_step: Optional[float] = None
    ) -> SizingResult:
        """Calculate the trade volume

        Args:
            account_balance: Account balance
            risk_percent: Risk per trade in percent (1.0 = 1%)
            stop_distance_price: Entry to stop distance in price
            pip_value: Value of one pip on one minimum-volume lot
            min_volume: Broker minimum volume
            free_margin: Free margin available
            margin_per_min_lot: Margin required per minimum lot (<= 0 = uncapped)
            pip_size: Price size of one pip
            volume_step: Broker volume step (defaults to min_volume)

        Returns:
            SizingResult

        Raises:
            ValueError: on non-positive risk percent or minimum volume
            SizingBelowMinimum: if the normalized volume is below min_volume
        """
        if risk_percent <= 0:
            raise ValueError(f"risk_percent must be > 0, got {risk_percent}")
        if min_volume <= 0:
            raise ValueError(f"min_volume must be > 0, got {min_volume}")

        step = volume_step if volume_step and volume_step > 0 else min_volume

        risk_amount = account_balance * (risk_percent / 100.0)
        stop_pips = abs(stop_distance_price) / pip_size if pip_size > 0 else 0.0
        risk_per_min_lot = stop_pips * pip_value

        if risk_per_min_lot <= 0:
            logger.debug("Degenerate stop distance, falling back to minimum volume")
            raw_volume = min_volume
        else:
            raw_volume = math.floor(risk_amount / risk_per_min_lot + 1e-9) * min_volume

        if margin_per_min_lot > 0:
            margin_cap = math.floor(free_margin / margin_per_min_lot + 1e-9) * min_volume
        else:
            margin_cap = float("inf")

        capped = margin_cap < raw_volume
        volume = max(min_volume, min(raw_volume, margin_cap))
        volume = _floor_to_step(volume, step)

        if volume < min_volume - 1e-9:
            raise SizingBelowMinimum(volume, min_volume)

        return SizingResult(
            volume=volume,
            risk_amount=risk_amount,
            risk_percent=risk_percent,
            stop_pips=stop_pips,
            margin_capped=capped
        )

    def size_for(
        self,
        instrument: InstrumentSpec,
        account: AccountState,
        risk_percent: float,
        stop_distance_price: float
    ) -> SizingResult:
        """Size a trade for a broker instrument and account"""
        result = self.size(
            account_balance=account.balance,
            risk_percent=risk_percent,
            stop_distance_price=stop_distance_price,
            pip_value=instrument.pip_value * instrument.min_volume,
            min_volume=instrument.min_volume,
            free_margin=account.free_margin,
            margin_per_min_lot=account.margin_per_min_lot,
            pip_size=instrument.pip_size,
            volume_step=instrument.volume_step
        )
        if result.volume > instrument.max_volume:
            result.volume = instrument.normalize_volume(instrument.max_volume)
        return result

    def initial_levels(
        self,
        direction: Direction,
        entry_price: float,
        atr: float,
        instrument: InstrumentSpec,
        swing_low: Optional[float] = None,
        swing_high: Optional[float] = None
    ) -> Tuple[float, float]:
        """Stop and target for a new step

        The stop takes the wider of the ATR distance and the swing extreme
        (plus buffer), and is at least one pip from entry.

        Returns:
            Tuple of (stop, target), rounded to tick size
        """
        buffer = atr * self.swing_buffer_atr
        pip = instrument.pip_size

        if direction is Direction.LONG:
            swing_low = entry_price if swing_low is None else swing_low
            swing_high = entry_price if swing_high is None else swing_high
            stop = min(entry_price - atr * self.sl_atr_multiplier, swing_low - buffer)
            stop = min(stop, entry_price - pip)
            target = max(entry_price + atr * self.tp_atr_multiplier, swing_high + buffer)
        else:
            swing_low = entry_price if swing_low is None else swing_low
            swing_high = entry_price if swing_high is None else swing_high
            stop = max(entry_price + atr * self.sl_atr_multiplier, swing_high + buffer)
            stop = max(stop, entry_price + pip)
            target = min(entry_price - atr * self.tp_atr_multiplier, swing_low - buffer)

        return instrument.round_to_tick(stop), instrument.round_to_tick(target)

    def default_levels(
        self,
        direction: Direction,
        entry_price: float,
        atr: float,
        instrument: InstrumentSpec
    ) -> Tuple[float, float]:
        """ATR-only stop and target, used to fill in missing broker levels"""
        stop = entry_price - direction.sign * atr * self.sl_atr_multiplier
        target = entry_price + direction.sign * atr * self.tp_atr_multiplier
        return instrument.round_to_tick(stop), instrument.round_to_tick(target)


def _floor_to_step(volume: float, step: float) -> float:
    """Floor volume to a multiple of the volume step"""
    steps = math.floor(volume / step + 1e-9)
    decimals = max(0, -int(math.floor(math.log10(step)))) if step < 1 else 0
    return round(steps * step, decimals + 2)
