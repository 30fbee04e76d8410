"""Gate-side scan sessions."""

from .capture import CaptureSource, LoggingResultDisplay, QueueCaptureSource, ResultDisplay
from .controller import RecentRedemptions, ScanAttempt, ScanSessionController, ScanState, ScanTimings

__all__ = [
    "CaptureSource",
    "LoggingResultDisplay",
    "QueueCaptureSource",
    "RecentRedemptions",
    "ResultDisplay",
    "ScanAttempt",
    "ScanSessionController",
    "ScanState",
    "ScanTimings",
]
