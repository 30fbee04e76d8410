from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from turnstile.core.config import Settings
from turnstile.core.logging import SECURITY_LOGGER_NAME
from turnstile.credentials.codec import CredentialCodec
from turnstile.credentials.errors import CredentialError, InvalidSignatureError
from turnstile.credentials.models import TicketCredential
from turnstile.metrics import MetricsRegistry, metrics_registry
from turnstile.metrics.definitions import CREDENTIAL_DECODE_FAILURES, SCAN_CYCLES, SCAN_SESSIONS_ACTIVE
from turnstile.redemption.broadcast import RedemptionBroadcaster, RedemptionNotice
from turnstile.redemption.engine import RedemptionEngine
from turnstile.redemption.models import DenialReason, OperatorResult, RedemptionOutcome, RedemptionResult
from turnstile.tickets.store import StoreUnavailableError

from .capture import CaptureSource, ResultDisplay

logger = logging.getLogger(__name__)
security_logger = logging.getLogger(SECURITY_LOGGER_NAME)


class ScanState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    DECODING = "decoding"
    REDEEMING = "redeeming"
    RESULT_DISPLAYED = "result_displayed"


@dataclass(frozen=True, slots=True)
class ScanTimings:
    """Pacing of a gate session, in seconds."""

    display_interval: float = 1.5
    decode_cooldown: float = 0.75
    capture_poll_interval: float = 0.1
    capture_timeout: float | None = None
    redeem_attempts: int = 3
    redeem_retry_delay: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScanTimings":
        return cls(
            display_interval=settings.gate_display_interval,
            decode_cooldown=settings.gate_decode_cooldown,
            capture_poll_interval=settings.gate_capture_poll_interval,
            capture_timeout=settings.gate_capture_timeout,
            redeem_attempts=settings.gate_redeem_attempts,
            redeem_retry_delay=settings.gate_redeem_retry_delay,
        )


@dataclass(frozen=True, slots=True)
class ScanAttempt:
    """What happened to one captured payload."""

    raw_payload: bytes
    outcome: RedemptionOutcome
    reason: DenialReason | None
    timestamp: datetime
    credential: TicketCredential | None = None


class RecentRedemptions:
    """Bounded, insertion-ordered memory of tickets redeemed anywhere in the process."""

    def __init__(self, capacity: int = 4096) -> None:
        self._capacity = capacity
        self._entries: OrderedDict[str, RedemptionNotice] = OrderedDict()

    def add(self, notice: RedemptionNotice) -> None:
        if self._capacity <= 0:
            return
        self._entries[notice.ticket_id] = notice
        self._entries.move_to_end(notice.ticket_id)
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def lookup(self, credential: TicketCredential) -> RedemptionNotice | None:
        notice = self._entries.get(credential.ticket_id)
        if notice is None:
            return None
        if notice.event_id != credential.event_id or notice.holder_id != credential.holder_id:
            return None
        return notice

    def __contains__(self, ticket_id: object) -> bool:
        return ticket_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ScanSessionController:
    """Drive one gate device: capture, decode, redeem, show, repeat.

    The controller owns no ticket state. Redemption decisions come from the
    shared :class:`RedemptionEngine`; the recently-redeemed cache only answers
    repeat scans of tickets this process has already let in without taking the
    ticket lock.
    """

    def __init__(
        self,
        *,
        codec: CredentialCodec,
        engine: RedemptionEngine,
        capture: CaptureSource,
        display: ResultDisplay,
        gate_id: str,
        expected_event_id: str | None = None,
        timings: ScanTimings | None = None,
        broadcaster: RedemptionBroadcaster | None = None,
        recent_capacity: int = 4096,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._codec = codec
        self._engine = engine
        self._capture = capture
        self._display = display
        self._gate_id = gate_id
        self._expected_event_id = expected_event_id
        self._timings = timings or ScanTimings()
        self._broadcaster = broadcaster
        self._recent = RecentRedemptions(recent_capacity)
        self._metrics = metrics or metrics_registry

        self._state = ScanState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Future[OperatorResult] | None = None
        self._last_attempt: ScanAttempt | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._stopping = False
        self._active = False
        self._closed = False
        self._subscribe()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        codec: CredentialCodec,
        engine: RedemptionEngine,
        capture: CaptureSource,
        display: ResultDisplay,
        gate_id: str,
        expected_event_id: str | None = None,
        broadcaster: RedemptionBroadcaster | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> "ScanSessionController":
        return cls(
            codec=codec,
            engine=engine,
            capture=capture,
            display=display,
            gate_id=gate_id,
            expected_event_id=expected_event_id,
            timings=ScanTimings.from_settings(settings),
            broadcaster=broadcaster,
            recent_capacity=settings.gate_recent_redemptions,
            metrics=metrics,
        )

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def gate_id(self) -> str:
        return self._gate_id

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def recent(self) -> RecentRedemptions:
        return self._recent

    @property
    def last_attempt(self) -> ScanAttempt | None:
        return self._last_attempt

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError(f"Scan session for gate {self._gate_id} is already running")
        if self._closed:
            raise RuntimeError(f"Capture source of gate {self._gate_id} has been released")
        self._stopping = False
        self._subscribe()
        self._active = True
        self._metrics.gauge(SCAN_SESSIONS_ACTIVE).add(1)
        self._task = asyncio.create_task(self._run(), name=f"scan-session-{self._gate_id}")
        logger.info("Scan session started at gate %s", self._gate_id)
        return self._task

    async def stop(self) -> None:
        """Stop the session from any state.

        A redemption already submitted to the engine is allowed to finish so that
        its store effect is consistent, but its result is not displayed.
        """

        self._stopping = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        in_flight = self._in_flight
        if in_flight is not None:
            try:
                result = await in_flight
            except Exception:
                logger.exception("In-flight redemption failed while stopping gate %s", self._gate_id)
            else:
                logger.info(
                    "Discarded result of in-flight redemption at gate %s: %s",
                    self._gate_id,
                    result.outcome.value,
                )
            self._in_flight = None

        await self._release()

    async def run_cycle(self) -> OperatorResult | None:
        """Run a single capture cycle.

        Returns the result shown to the operator, or ``None`` when the capture
        wait timed out without reading anything.
        """

        payload = await self._await_payload()
        if payload is None:
            self._count_cycle("timeout")
            return None

        self._state = ScanState.DECODING
        try:
            credential = self._codec.decode(payload)
        except CredentialError as exc:
            result = self._reject_payload(exc)
            self._remember(payload, result)
            await self._show(result, self._timings.decode_cooldown)
            return result

        notice = self._recent.lookup(credential)
        if notice is not None and self._expected_event_id in (None, credential.event_id):
            denial = RedemptionResult(
                outcome=RedemptionOutcome.DENIED,
                ticket_id=credential.ticket_id,
                event_id=credential.event_id,
                ticket_class=credential.ticket_class,
                reason=DenialReason.ALREADY_USED,
                used_at=notice.used_at,
                used_by_gate=notice.gate_id,
                detail="recently redeemed in this process",
            )
            await self._engine.record_decision(denial, gate_id=self._gate_id)
            result = OperatorResult.from_redemption(denial)
        else:
            self._state = ScanState.REDEEMING
            self._in_flight = asyncio.ensure_future(self._redeem(credential))
            # Cancelling the session must not cancel a write already sent to the store.
            result = await asyncio.shield(self._in_flight)
            self._in_flight = None

        self._count_cycle(result.outcome.value)
        self._remember(payload, result, credential)
        await self._show(result, self._timings.display_interval)
        return result

    async def _run(self) -> None:
        try:
            while not self._stopping:
                result = await self.run_cycle()
                if result is None:
                    logger.info("No ticket presented at gate %s before the capture timeout", self._gate_id)
                    break
        finally:
            if self._in_flight is None or self._in_flight.done():
                self._in_flight = None
                await self._release()

    async def _await_payload(self) -> bytes | None:
        self._state = ScanState.CAPTURING
        loop = asyncio.get_running_loop()
        timeout = self._timings.capture_timeout
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if deadline is None:
                payload = await self._capture.capture_once()
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    # A camera that never recognises a symbol may block here forever.
                    payload = await asyncio.wait_for(self._capture.capture_once(), remaining)
                except asyncio.TimeoutError:
                    return None
            if payload:
                return payload
            if deadline is not None and loop.time() >= deadline:
                return None
            await asyncio.sleep(self._timings.capture_poll_interval)

    def _reject_payload(self, error: CredentialError) -> OperatorResult:
        result = OperatorResult.from_decode_error(error)
        reason = result.reason.value if result.reason else "unknown"
        self._metrics.counter(CREDENTIAL_DECODE_FAILURES, label_names=("reason",)).inc(labels={"reason": reason})
        if isinstance(error, InvalidSignatureError):
            security_logger.warning("Credential with invalid signature presented at gate %s", self._gate_id)
        else:
            logger.info("Unreadable payload at gate %s: %s", self._gate_id, error)
        self._count_cycle("decode_failed")
        return result

    def _remember(
        self,
        payload: bytes,
        result: OperatorResult,
        credential: TicketCredential | None = None,
    ) -> None:
        self._last_attempt = ScanAttempt(
            raw_payload=payload,
            outcome=result.outcome,
            reason=result.reason,
            timestamp=datetime.now(timezone.utc),
            credential=credential,
        )

    async def _redeem(self, credential: TicketCredential) -> OperatorResult:
        attempts = max(1, self._timings.redeem_attempts)
        started = datetime.now(timezone.utc)
        ambiguous = False
        for attempt in range(1, attempts + 1):
            try:
                redemption = await self._engine.redeem(
                    credential,
                    gate_id=self._gate_id,
                    expected_event_id=self._expected_event_id,
                )
            except StoreUnavailableError:
                ambiguous = True
                logger.warning(
                    "Redeem attempt %s/%s for ticket %s failed at gate %s",
                    attempt,
                    attempts,
                    credential.ticket_id,
                    self._gate_id,
                )
                if attempt == attempts or self._stopping:
                    break
                await asyncio.sleep(self._timings.redeem_retry_delay)
            else:
                if ambiguous and self._committed_by_earlier_attempt(redemption, started):
                    redemption = await self._confirm_grant(credential, redemption)
                return OperatorResult.from_redemption(redemption)
        return OperatorResult.store_unavailable()

    def _committed_by_earlier_attempt(self, redemption: RedemptionResult, started: datetime) -> bool:
        return (
            redemption.reason is DenialReason.ALREADY_USED
            and redemption.used_by_gate == self._gate_id
            and redemption.used_at is not None
            and redemption.used_at >= started
        )

    async def _confirm_grant(self, credential: TicketCredential, redemption: RedemptionResult) -> RedemptionResult:
        # The failed attempt committed before its connection dropped.
        logger.info(
            "Ticket %s was redeemed at gate %s by an attempt reported as failed",
            credential.ticket_id,
            self._gate_id,
        )
        granted = replace(redemption, outcome=RedemptionOutcome.GRANTED, reason=None)
        if self._broadcaster is not None and granted.used_at is not None:
            self._broadcaster.publish(
                RedemptionNotice(
                    ticket_id=credential.ticket_id,
                    event_id=credential.event_id,
                    holder_id=credential.holder_id,
                    used_at=granted.used_at,
                    gate_id=self._gate_id,
                )
            )
        await self._engine.record_decision(granted, gate_id=self._gate_id)
        return granted

    async def _show(self, result: OperatorResult, hold: float) -> None:
        self._state = ScanState.RESULT_DISPLAYED
        self._display.show(result)
        await asyncio.sleep(hold)

    def _count_cycle(self, outcome: str) -> None:
        self._metrics.counter(SCAN_CYCLES, label_names=("outcome",)).inc(labels={"outcome": outcome})

    def _subscribe(self) -> None:
        if self._broadcaster is not None and self._unsubscribe is None:
            self._unsubscribe = self._broadcaster.subscribe(self._on_redeemed)

    def _on_redeemed(self, notice: RedemptionNotice) -> None:
        self._recent.add(notice)

    async def _release(self) -> None:
        self._state = ScanState.IDLE
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._active:
            self._active = False
            self._metrics.gauge(SCAN_SESSIONS_ACTIVE).add(-1)
            logger.info("Scan session stopped at gate %s", self._gate_id)
        if not self._closed:
            self._closed = True
            await self._capture.close()

