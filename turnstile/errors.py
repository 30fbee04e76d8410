from __future__ import annotations


class TurnstileError(RuntimeError):
    """Base error for every failure raised by the ticketing core."""
