"""Gate-side redemption of ticket credentials."""

from .broadcast import RedemptionBroadcaster, RedemptionNotice
from .engine import RedemptionEngine
from .locks import KeyedLock
from .models import DenialReason, OperatorResult, RedemptionOutcome, RedemptionResult

__all__ = [
    "DenialReason",
    "KeyedLock",
    "OperatorResult",
    "RedemptionBroadcaster",
    "RedemptionEngine",
    "RedemptionNotice",
    "RedemptionOutcome",
    "RedemptionResult",
]
