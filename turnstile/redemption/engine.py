from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable

from opentelemetry import trace

from turnstile.core.logging import AUDIT_LOGGER_NAME
from turnstile.credentials.models import TicketCredential
from turnstile.metrics import MetricsRegistry, metrics_registry
from turnstile.metrics.definitions import REDEMPTION_DURATION, REDEMPTIONS, STORE_UNAVAILABLE
from turnstile.tickets.models import ScanLogEntry, TicketRecord
from turnstile.tickets.state import TicketStatus
from turnstile.tickets.store import StoreError, StoreUnavailableError, TicketRecordStore

from .broadcast import RedemptionBroadcaster, RedemptionNotice
from .locks import KeyedLock
from .models import DenialReason, RedemptionOutcome, RedemptionResult

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
tracer = trace.get_tracer(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RedemptionEngine:
    """Single authority turning verified credentials into entry decisions.

    ``redeem`` serializes attempts on the same ticket id through a keyed lock and
    relies on the store's conditional write for cross-process exclusion, so at
    most one attempt per ticket is ever granted. Store failures propagate as
    :class:`StoreUnavailableError`; the engine never retries on its own.
    """

    def __init__(
        self,
        store: TicketRecordStore,
        *,
        broadcaster: RedemptionBroadcaster | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._metrics = metrics or metrics_registry
        self._clock = clock
        self._locks = KeyedLock()

    async def redeem(
        self,
        credential: TicketCredential,
        *,
        gate_id: str | None = None,
        expected_event_id: str | None = None,
    ) -> RedemptionResult:
        with tracer.start_as_current_span("turnstile.redeem") as span:
            span.set_attribute("turnstile.ticket_id", credential.ticket_id)
            if gate_id:
                span.set_attribute("turnstile.gate_id", gate_id)
            with self._metrics.time_distribution(REDEMPTION_DURATION):
                try:
                    async with self._locks.hold(credential.ticket_id):
                        result = await self._redeem_locked(credential, gate_id, expected_event_id)
                except StoreUnavailableError:
                    self._metrics.counter(STORE_UNAVAILABLE).inc()
                    logger.warning(
                        "Ticket store unavailable while redeeming %s at gate %s",
                        credential.ticket_id,
                        gate_id,
                    )
                    raise
            span.set_attribute("turnstile.outcome", result.outcome.value)

        if result.granted and self._broadcaster is not None and result.used_at is not None:
            self._broadcaster.publish(
                RedemptionNotice(
                    ticket_id=result.ticket_id,
                    event_id=result.event_id,
                    holder_id=credential.holder_id,
                    used_at=result.used_at,
                    gate_id=gate_id,
                )
            )
        await self.record_decision(result, gate_id=gate_id)
        return result

    async def record_decision(self, result: RedemptionResult, *, gate_id: str | None = None) -> None:
        """Count, log and write a decision to the scan log.

        ``redeem`` calls this for every decision it takes. Gate sessions call it
        directly for denials they answer from their recently-redeemed cache.
        """

        self._metrics.counter(REDEMPTIONS, label_names=("outcome", "reason")).inc(
            labels={
                "outcome": result.outcome.value,
                "reason": result.reason.value if result.reason else "",
            }
        )
        if result.granted:
            logger.info("Ticket %s redeemed at gate %s", result.ticket_id, gate_id)
        else:
            logger.info(
                "Ticket %s denied at gate %s: %s",
                result.ticket_id,
                gate_id,
                result.reason.value if result.reason else "unknown",
            )
        await self._record_scan(result, gate_id)

    async def check(
        self,
        credential: TicketCredential,
        *,
        expected_event_id: str | None = None,
    ) -> RedemptionResult:
        """Return the decision ``redeem`` would take, without consuming the ticket."""

        record = await self._store.get(credential.ticket_id)
        denial = self._evaluate(credential, record, expected_event_id)
        if denial is not None:
            return denial
        return self._result(credential, RedemptionOutcome.GRANTED)

    async def _redeem_locked(
        self,
        credential: TicketCredential,
        gate_id: str | None,
        expected_event_id: str | None,
    ) -> RedemptionResult:
        record = await self._store.get(credential.ticket_id)
        denial = self._evaluate(credential, record, expected_event_id)
        if denial is not None:
            return denial

        used_at = self._clock()
        if await self._store.try_mark_used(credential.ticket_id, used_at=used_at, gate_id=gate_id):
            return self._result(credential, RedemptionOutcome.GRANTED, used_at=used_at)

        # Another process changed the ticket between our read and the conditional write.
        current = await self._store.get(credential.ticket_id)
        denial = self._evaluate(credential, current, expected_event_id)
        if denial is not None:
            return denial
        raise StoreUnavailableError(
            f"Ticket store rejected the transition of {credential.ticket_id} without a conflicting state"
        )

    def _evaluate(
        self,
        credential: TicketCredential,
        record: TicketRecord | None,
        expected_event_id: str | None,
    ) -> RedemptionResult | None:
        if record is None:
            audit_logger.warning(
                "Authentic credential for unknown ticket %s (event %s)",
                credential.ticket_id,
                credential.event_id,
            )
            return self._denied(credential, DenialReason.UNKNOWN_TICKET, detail="ticket not found")

        if record.event_id != credential.event_id or record.holder_id != credential.holder_id:
            audit_logger.warning(
                "Credential for ticket %s does not match the ticket record",
                credential.ticket_id,
            )
            return self._denied(
                credential,
                DenialReason.UNKNOWN_TICKET,
                detail="credential does not match ticket record",
            )

        if expected_event_id is not None and credential.event_id != expected_event_id:
            return self._denied(credential, DenialReason.WRONG_EVENT)

        if record.status is TicketStatus.CANCELLED:
            return self._denied(credential, DenialReason.TICKET_CANCELLED)
        if record.status is TicketStatus.USED:
            return self._denied(
                credential,
                DenialReason.ALREADY_USED,
                used_at=record.used_at,
                used_by_gate=record.used_by_gate,
            )
        return None

    def _denied(
        self,
        credential: TicketCredential,
        reason: DenialReason,
        *,
        used_at: datetime | None = None,
        used_by_gate: str | None = None,
        detail: str | None = None,
    ) -> RedemptionResult:
        return self._result(
            credential,
            RedemptionOutcome.DENIED,
            reason=reason,
            used_at=used_at,
            used_by_gate=used_by_gate,
            detail=detail,
        )

    @staticmethod
    def _result(
        credential: TicketCredential,
        outcome: RedemptionOutcome,
        *,
        reason: DenialReason | None = None,
        used_at: datetime | None = None,
        used_by_gate: str | None = None,
        detail: str | None = None,
    ) -> RedemptionResult:
        return RedemptionResult(
            outcome=outcome,
            ticket_id=credential.ticket_id,
            event_id=credential.event_id,
            ticket_class=credential.ticket_class,
            reason=reason,
            used_at=used_at,
            used_by_gate=used_by_gate,
            detail=detail,
        )

    async def _record_scan(self, result: RedemptionResult, gate_id: str | None) -> None:
        metadata: dict[str, str] = {"ticket_class": result.ticket_class.value}
        if result.detail:
            metadata["detail"] = result.detail
        entry = ScanLogEntry(
            id=str(uuid.uuid4()),
            ticket_id=result.ticket_id,
            event_id=result.event_id,
            gate_id=gate_id,
            outcome=result.outcome.value,
            reason=result.reason.value if result.reason else None,
            scanned_at=self._clock(),
            metadata=metadata,
        )
        try:
            await self._store.record_scan(entry)
        except StoreError:
            logger.warning("Could not record scan of ticket %s", result.ticket_id, exc_info=True)
