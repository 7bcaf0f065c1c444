"""Engine Errors
=============

None of these are fatal: each one means "no state change, continue with
the next event".

Author: PyramidTrend Team
"""
from enum import Enum


class AdmissionResult(Enum):
    """Outcome of a pyramid admission check (a normal skip, not an error)"""
    ALLOWED = "allowed"
    REJECTED_MAX_STEPS = "max_steps"
    REJECTED_NOT_AT_BREAK_EVEN = "not_at_break_even"
    REJECTED_TOO_CLOSE = "too_close"

    @property
    def allowed(self) -> bool:
        return self is AdmissionResult.ALLOWED


class SizingBelowMinimum(RuntimeError):
    """Normalized volume is below the broker minimum; skip the entry"""

    def __init__(self, volume: float, min_volume: float):
        super().__init__(f"Calculated volume {volume} below minimum {min_volume}")
        self.volume = volume
        self.min_volume = min_volume


class ExecutionFailed(RuntimeError):
    """The execution collaborator rejected an open/modify/close request"""

    def __init__(self, action: str, cause: str = ""):
        super().__init__(f"{action} failed: {cause}" if cause else f"{action} failed")
        self.action = action
        self.cause = cause


class ReconciliationAmbiguous(RuntimeError):
    """A restored trade's tag cannot be parsed into a step index"""

    def __init__(self, comment: str):
        super().__init__(f"Cannot parse pyramid step from comment {comment!r}")
        self.comment = comment
