from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from turnstile.core.config import Settings
from turnstile.credentials import CredentialCodec, SigningKeyring, TicketClaims, TicketClass
from turnstile.metrics.definitions import CREDENTIAL_DECODE_FAILURES, SCAN_SESSIONS_ACTIVE
from turnstile.redemption import (
    DenialReason,
    OperatorResult,
    RedemptionEngine,
    RedemptionNotice,
    RedemptionOutcome,
    RedemptionResult,
)
from turnstile.scanning import (
    LoggingResultDisplay,
    QueueCaptureSource,
    RecentRedemptions,
    ScanSessionController,
    ScanState,
    ScanTimings,
)
from turnstile.tickets import InMemoryTicketStore, StoreUnavailableError, TicketStatus

FAST = ScanTimings(
    display_interval=0,
    decode_cooldown=0,
    capture_poll_interval=0.001,
    capture_timeout=None,
    redeem_attempts=3,
    redeem_retry_delay=0,
)
USED_AT = datetime(2026, 3, 14, 19, 42, tzinfo=timezone.utc)


class ScriptedCapture:
    def __init__(self, *payloads):
        self._payloads = list(payloads)
        self.closed = False

    async def capture_once(self):
        await asyncio.sleep(0)
        if self._payloads:
            return self._payloads.pop(0)
        return None

    async def close(self):
        self.closed = True


class RecordingDisplay:
    def __init__(self):
        self.results = []

    def show(self, result):
        self.results.append(result)


class GatedEngine:
    """Engine wrapper that holds redemptions until released."""

    def __init__(self, engine):
        self._engine = engine
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def redeem(self, credential, **kwargs):
        self.entered.set()
        await self.release.wait()
        return await self._engine.redeem(credential, **kwargs)


class BlockingCapture:
    """Capture source whose camera never recognises a symbol."""

    def __init__(self):
        self.never = asyncio.Event()
        self.closed = False

    async def capture_once(self):
        await self.never.wait()
        return None

    async def close(self):
        self.closed = True


class CommitThenDropStore(InMemoryTicketStore):
    """Commits the first redemption but reports the connection as lost."""

    def __init__(self):
        super().__init__()
        self.dropped = False

    async def try_mark_used(self, ticket_id, **kwargs):
        committed = await super().try_mark_used(ticket_id, **kwargs)
        if not self.dropped:
            self.dropped = True
            raise StoreUnavailableError("connection lost during commit")
        return committed


class FlakyReadStore(InMemoryTicketStore):
    def __init__(self):
        super().__init__()
        self.failures = 1

    async def get(self, ticket_id):
        if self.failures:
            self.failures -= 1
            raise StoreUnavailableError("down")
        return await super().get(ticket_id)


async def _issue(codec, store, ticket_id="T1", event_id="E1"):
    issued = codec.issue(
        TicketClaims(ticket_id, event_id, "U1", TicketClass.STUDENT, datetime(2026, 3, 1, tzinfo=timezone.utc))
    )
    await store.create(ticket_id, event_id, "U1", ticket_class=TicketClass.STUDENT, credential=issued.payload)
    return issued


def _controller(codec, engine, capture, display, *, timings=FAST, **kwargs):
    return ScanSessionController(
        codec=codec,
        engine=engine,
        capture=capture,
        display=display,
        gate_id="north-1",
        timings=timings,
        **kwargs,
    )


def _granted(credential) -> RedemptionResult:
    return RedemptionResult(
        outcome=RedemptionOutcome.GRANTED,
        ticket_id=credential.ticket_id,
        event_id=credential.event_id,
        ticket_class=credential.ticket_class,
        used_at=USED_AT,
    )


@pytest.mark.asyncio
async def test_cycle_redeems_and_displays_grant(codec, store, engine, registry):
    issued = await _issue(codec, store)
    display = RecordingDisplay()
    controller = _controller(codec, engine, ScriptedCapture(None, issued.payload_bytes), display, metrics=registry)

    result = await controller.run_cycle()

    assert result.granted
    assert result.ticket_class is TicketClass.STUDENT
    assert display.results == [result]
    assert controller.state is ScanState.RESULT_DISPLAYED
    assert (await store.get("T1")).status is TicketStatus.USED
    assert controller.last_attempt.outcome is RedemptionOutcome.GRANTED
    assert controller.last_attempt.credential.ticket_id == "T1"
    assert controller.last_attempt.raw_payload == issued.payload_bytes


@pytest.mark.asyncio
async def test_second_scan_of_same_ticket_is_denied(codec, store, engine):
    issued = await _issue(codec, store)
    display = RecordingDisplay()
    controller = _controller(codec, engine, ScriptedCapture(issued.payload_bytes, issued.payload_bytes), display)

    await controller.run_cycle()
    second = await controller.run_cycle()

    assert second.reason is DenialReason.ALREADY_USED


@pytest.mark.asyncio
async def test_unreadable_payload_is_shown_and_never_reaches_engine(codec, registry):
    engine = AsyncMock()
    display = RecordingDisplay()
    controller = _controller(codec, engine, ScriptedCapture(b"not a ticket"), display, metrics=registry)

    result = await controller.run_cycle()

    assert result.reason is DenialReason.MALFORMED_PAYLOAD
    engine.redeem.assert_not_awaited()
    assert controller.last_attempt.credential is None
    assert controller.last_attempt.reason is DenialReason.MALFORMED_PAYLOAD
    failures = registry.counter(CREDENTIAL_DECODE_FAILURES)
    assert failures.value(labels={"reason": "malformed_payload"}) == 1


@pytest.mark.asyncio
async def test_forged_payload_is_shown_as_invalid_ticket(codec, claims):
    forged = CredentialCodec(SigningKeyring(active=b"x" * 32)).issue(claims).payload_bytes
    engine = AsyncMock()
    display = RecordingDisplay()
    controller = _controller(codec, engine, ScriptedCapture(forged), display)

    result = await controller.run_cycle()

    assert result.reason is DenialReason.INVALID_SIGNATURE
    assert result.message == "Ticket invalid"
    engine.redeem.assert_not_awaited()


@pytest.mark.asyncio
async def test_store_unavailable_is_retried_with_same_credential(codec, store):
    issued = await _issue(codec, store)
    credential = codec.decode(issued.payload)
    engine = AsyncMock()
    engine.redeem.side_effect = [StoreUnavailableError("down"), StoreUnavailableError("down"), _granted(credential)]
    capture = ScriptedCapture(issued.payload_bytes)
    controller = _controller(codec, engine, capture, RecordingDisplay())

    result = await controller.run_cycle()

    assert result.granted
    assert engine.redeem.await_count == 3
    assert {call.args[0] for call in engine.redeem.await_args_list} == {credential}


@pytest.mark.asyncio
async def test_exhausted_retries_show_retryable_denial(codec, store):
    issued = await _issue(codec, store)
    engine = AsyncMock()
    engine.redeem.side_effect = StoreUnavailableError("down")
    display = RecordingDisplay()
    controller = _controller(codec, engine, ScriptedCapture(issued.payload_bytes), display)

    result = await controller.run_cycle()

    assert result.reason is DenialReason.STORE_UNAVAILABLE
    assert result.retryable is True
    assert engine.redeem.await_count == FAST.redeem_attempts


@pytest.mark.asyncio
async def test_capture_timeout_ends_the_session(codec, engine, registry):
    capture = ScriptedCapture()
    timings = ScanTimings(
        display_interval=0,
        decode_cooldown=0,
        capture_poll_interval=0.001,
        capture_timeout=0.01,
    )
    controller = _controller(codec, engine, capture, RecordingDisplay(), timings=timings, metrics=registry)

    task = controller.start()
    await asyncio.wait_for(task, timeout=1)

    assert capture.closed
    assert controller.state is ScanState.IDLE
    assert not controller.running
    assert registry.gauge(SCAN_SESSIONS_ACTIVE).value() == 0


@pytest.mark.asyncio
async def test_capture_timeout_bounds_a_blocked_capture(codec, engine, registry):
    capture = BlockingCapture()
    timings = ScanTimings(display_interval=0, decode_cooldown=0, capture_timeout=0.05)
    controller = _controller(codec, engine, capture, RecordingDisplay(), timings=timings, metrics=registry)

    task = controller.start()
    await asyncio.wait_for(task, timeout=1)

    assert capture.closed
    assert not controller.running
    assert controller.state is ScanState.IDLE


@pytest.mark.asyncio
async def test_commit_reported_as_failed_is_confirmed_as_grant(codec, broadcaster):
    store = CommitThenDropStore()
    issued = await _issue(codec, store)
    engine = RedemptionEngine(store, broadcaster=broadcaster)
    display = RecordingDisplay()
    controller = _controller(codec, engine, ScriptedCapture(issued.payload_bytes), display, broadcaster=broadcaster)

    result = await controller.run_cycle()

    assert result.granted
    assert display.results == [result]
    assert "T1" in controller.recent
    record = await store.get("T1")
    assert record.used_by_gate == "north-1"
    assert [scan.outcome for scan in await store.list_scans("T1")] == ["denied", "granted"]


@pytest.mark.asyncio
async def test_earlier_use_at_same_gate_stays_denied_after_retry(codec):
    store = FlakyReadStore()
    issued = await _issue(codec, store)
    await store.try_mark_used("T1", used_at=USED_AT, gate_id="north-1")
    controller = _controller(codec, RedemptionEngine(store), ScriptedCapture(issued.payload_bytes), RecordingDisplay())

    result = await controller.run_cycle()

    assert result.reason is DenialReason.ALREADY_USED
    assert result.used_at == USED_AT


@pytest.mark.asyncio
async def test_stop_while_capturing_releases_capture(codec, engine, registry):
    capture = ScriptedCapture()
    display = RecordingDisplay()
    controller = _controller(codec, engine, capture, display, metrics=registry)

    controller.start()
    await asyncio.sleep(0.01)
    assert controller.state is ScanState.CAPTURING
    assert registry.gauge(SCAN_SESSIONS_ACTIVE).value() == 1

    await controller.stop()

    assert capture.closed
    assert controller.state is ScanState.IDLE
    assert display.results == []
    assert registry.gauge(SCAN_SESSIONS_ACTIVE).value() == 0


@pytest.mark.asyncio
async def test_stop_during_redeem_keeps_store_effect_but_hides_result(codec, store, engine):
    issued = await _issue(codec, store)
    gated = GatedEngine(engine)
    capture = ScriptedCapture(issued.payload_bytes)
    display = RecordingDisplay()
    controller = _controller(codec, gated, capture, display)

    controller.start()
    await asyncio.wait_for(gated.entered.wait(), timeout=1)
    assert controller.state is ScanState.REDEEMING

    stopping = asyncio.create_task(controller.stop())
    await asyncio.sleep(0)
    gated.release.set()
    await asyncio.wait_for(stopping, timeout=1)

    assert display.results == []
    assert capture.closed
    assert (await store.get("T1")).status is TicketStatus.USED


@pytest.mark.asyncio
async def test_redemption_broadcast_from_other_gate_is_denied_locally(codec, store, broadcaster):
    issued = await _issue(codec, store)
    engine = AsyncMock()
    capture = ScriptedCapture(issued.payload_bytes)
    controller = _controller(codec, engine, capture, RecordingDisplay(), broadcaster=broadcaster)

    notice = RedemptionNotice(ticket_id="T1", event_id="E1", holder_id="U1", used_at=USED_AT, gate_id="south-3")
    broadcaster.publish(notice)
    result = await controller.run_cycle()

    assert result.reason is DenialReason.ALREADY_USED
    assert result.used_at == USED_AT
    engine.redeem.assert_not_awaited()
    engine.record_decision.assert_awaited_once()
    recorded = engine.record_decision.await_args
    assert recorded.args[0].reason is DenialReason.ALREADY_USED
    assert recorded.kwargs == {"gate_id": "north-1"}


@pytest.mark.asyncio
async def test_local_denial_is_written_to_scan_log(codec, store, engine, broadcaster):
    issued = await _issue(codec, store)
    controller = _controller(
        codec, engine, ScriptedCapture(issued.payload_bytes), RecordingDisplay(), broadcaster=broadcaster
    )
    await engine.redeem(codec.decode(issued.payload), gate_id="south-3")
    assert "T1" in controller.recent

    result = await controller.run_cycle()

    assert result.reason is DenialReason.ALREADY_USED
    scans = await store.list_scans("T1")
    assert [(scan.gate_id, scan.outcome, scan.reason) for scan in scans] == [
        ("south-3", "granted", None),
        ("north-1", "denied", "already_used"),
    ]


@pytest.mark.asyncio
async def test_holder_mismatch_after_broadcast_is_not_reported_as_used(codec, store, engine, broadcaster):
    issued = await _issue(codec, store)
    other_holder = codec.issue(
        TicketClaims("T1", "E1", "U2", TicketClass.STUDENT, datetime(2026, 3, 1, tzinfo=timezone.utc))
    )
    controller = _controller(
        codec, engine, ScriptedCapture(other_holder.payload_bytes), RecordingDisplay(), broadcaster=broadcaster
    )
    await engine.redeem(codec.decode(issued.payload), gate_id="south-3")
    assert "T1" in controller.recent

    result = await controller.run_cycle()

    assert result.reason is DenialReason.UNKNOWN_TICKET
    assert (await store.list_scans("T1"))[-1].reason == "unknown_ticket"


@pytest.mark.asyncio
async def test_recent_cache_is_bypassed_for_other_events(codec, store, broadcaster):
    issued = await _issue(codec, store)
    credential = codec.decode(issued.payload)
    engine = AsyncMock()
    engine.redeem.return_value = RedemptionResult(
        outcome=RedemptionOutcome.DENIED,
        ticket_id="T1",
        event_id="E1",
        ticket_class=credential.ticket_class,
        reason=DenialReason.WRONG_EVENT,
    )
    controller = _controller(
        codec,
        engine,
        ScriptedCapture(issued.payload_bytes),
        RecordingDisplay(),
        broadcaster=broadcaster,
        expected_event_id="E9",
    )

    broadcaster.publish(RedemptionNotice(ticket_id="T1", event_id="E1", holder_id="U1", used_at=USED_AT))
    result = await controller.run_cycle()

    assert result.reason is DenialReason.WRONG_EVENT
    engine.redeem.assert_awaited_once()


@pytest.mark.asyncio
async def test_stopped_session_unsubscribes_and_cannot_restart(codec, engine, broadcaster):
    controller = _controller(codec, engine, ScriptedCapture(), RecordingDisplay(), broadcaster=broadcaster)
    assert len(broadcaster) == 1

    controller.start()
    with pytest.raises(RuntimeError):
        controller.start()
    await controller.stop()

    assert len(broadcaster) == 0
    with pytest.raises(RuntimeError):
        controller.start()


def test_recent_redemptions_evicts_oldest():
    recent = RecentRedemptions(capacity=2)
    for ticket_id in ("T1", "T2", "T3"):
        recent.add(RedemptionNotice(ticket_id=ticket_id, event_id="E1", holder_id="U1", used_at=USED_AT))

    assert len(recent) == 2
    assert "T1" not in recent
    assert "T3" in recent


@pytest.mark.asyncio
async def test_queue_capture_source_delivers_fed_payloads():
    source = QueueCaptureSource()
    source.feed("TK1.abc")

    assert await source.capture_once() == b"TK1.abc"
    assert await source.capture_once() is None

    await source.close()
    assert source.closed
    with pytest.raises(RuntimeError):
        source.feed(b"TK1.def")


def test_timings_follow_settings():
    settings = Settings(gate_display_interval=2.0, gate_capture_timeout=30, gate_redeem_attempts=5)

    timings = ScanTimings.from_settings(settings)

    assert timings.display_interval == 2.0
    assert timings.capture_timeout == 30
    assert timings.redeem_attempts == 5


def test_logging_display_writes_operator_message(caplog):
    display = LoggingResultDisplay("north-1")

    with caplog.at_level("INFO", logger="turnstile.scanning.capture"):
        display.show(OperatorResult.store_unavailable())

    assert "[north-1] Ticket system unreachable, try again" in caplog.text
