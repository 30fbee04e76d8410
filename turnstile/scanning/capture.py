"""Collaborators a gate scan session reads from and writes to."""
from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from turnstile.redemption.models import OperatorResult

logger = logging.getLogger(__name__)


class CaptureSource(Protocol):
    """A camera or hand-held scanner that yields recognized symbol payloads."""

    async def capture_once(self) -> bytes | None:
        """Return the next recognized payload, or ``None`` when nothing was read."""
        ...

    async def close(self) -> None:
        ...


class ResultDisplay(Protocol):
    def show(self, result: OperatorResult) -> None:
        ...


class QueueCaptureSource:
    """Capture source fed by another task, e.g. a keyboard-wedge reader or an HTTP hook."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, payload: bytes | str) -> None:
        if self._closed:
            raise RuntimeError("Capture source is closed")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        self._queue.put_nowait(payload)

    async def capture_once(self) -> bytes | None:
        if self._closed:
            return None
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def close(self) -> None:
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()


class LoggingResultDisplay:
    """Display that writes operator results to the log; used for headless gates."""

    def __init__(self, gate_id: str) -> None:
        self._gate_id = gate_id

    def show(self, result: OperatorResult) -> None:
        logger.info("[%s] %s", self._gate_id, result.message)
