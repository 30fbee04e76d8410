"""Fan-out of successful redemptions to every gate session of the process."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RedemptionNotice:
    ticket_id: str
    event_id: str
    holder_id: str
    used_at: datetime
    gate_id: str | None = None


Listener = Callable[[RedemptionNotice], None]


class RedemptionBroadcaster:
    """Synchronous publish/subscribe hub for :class:`RedemptionNotice` events."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unregisters it."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, notice: RedemptionNotice) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(notice)
            except Exception:
                # A broken gate listener must not undo a committed redemption.
                logger.exception("Redemption listener failed for ticket %s", notice.ticket_id)

    def __len__(self) -> int:
        return len(self._listeners)
