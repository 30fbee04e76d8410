from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Sequence

from opentelemetry import trace

from turnstile.core.logging import AUDIT_LOGGER_NAME
from turnstile.credentials.codec import CredentialCodec
from turnstile.credentials.models import IssuedCredential, TicketClaims, TicketClass
from turnstile.errors import TurnstileError
from turnstile.metrics import MetricsRegistry, metrics_registry
from turnstile.metrics.definitions import CREDENTIALS_ISSUED, TICKETS_CANCELLED

from .models import ScanLogEntry, TicketRecord
from .state import TicketStateMachine, TicketStatus
from .store import TicketRecordStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
tracer = trace.get_tracer(__name__)


class TicketServiceError(TurnstileError):
    """Base error for ticket service issues."""


class TicketNotFoundError(TicketServiceError):
    """Raised when a ticket could not be located."""


class InvalidTicketTransitionError(TicketServiceError):
    """Raised when attempting to transition to an invalid state."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketService:
    """High level orchestration for issuance, lookup and administrative cancellation."""

    def __init__(
        self,
        store: TicketRecordStore,
        codec: CredentialCodec,
        *,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._codec = codec
        self._metrics = metrics or metrics_registry
        self._clock = clock

    async def on_purchase_confirmed(
        self,
        ticket_id: str,
        event_id: str,
        holder_id: str,
        ticket_class: TicketClass | str,
    ) -> IssuedCredential:
        """Issue the credential of a paid ticket and create its ACTIVE record.

        Purchase events are not deduplicated here: a second call for the same
        ticket id fails with :class:`~turnstile.tickets.store.TicketAlreadyExistsError`.
        """

        with tracer.start_as_current_span("turnstile.issue") as span:
            span.set_attribute("turnstile.ticket_id", ticket_id)
            claims = TicketClaims(
                ticket_id=ticket_id,
                event_id=event_id,
                holder_id=holder_id,
                ticket_class=TicketClass(ticket_class),
                issued_at=self._clock(),
            )
            issued = self._codec.issue(claims)
            await self._store.create(
                ticket_id,
                event_id,
                holder_id,
                ticket_class=claims.ticket_class,
                credential=issued.payload,
            )

        self._metrics.counter(CREDENTIALS_ISSUED, label_names=("ticket_class",)).inc(
            labels={"ticket_class": claims.ticket_class.value}
        )
        logger.info("Issued credential for ticket %s (event %s)", ticket_id, event_id)
        return issued

    async def get_ticket(self, ticket_id: str) -> TicketRecord:
        record = await self._store.get(ticket_id)
        if record is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return record

    async def get_credential_payload(self, ticket_id: str) -> str:
        record = await self.get_ticket(ticket_id)
        if not record.credential:
            raise TicketNotFoundError(f"Ticket {ticket_id} has no credential")
        return record.credential

    async def cancel_ticket(self, ticket_id: str, *, actor: str, reason: str | None = None) -> TicketRecord:
        record = await self.get_ticket(ticket_id)
        if not TicketStateMachine.can_transition(record.status, TicketStatus.CANCELLED):
            raise InvalidTicketTransitionError(
                f"Cannot cancel ticket {ticket_id} in status {record.status.value}"
            )

        cancelled = await self._store.try_cancel(ticket_id, cancelled_at=self._clock(), reason=reason)
        if not cancelled:
            current = await self.get_ticket(ticket_id)
            raise InvalidTicketTransitionError(
                f"Cannot cancel ticket {ticket_id} in status {current.status.value}"
            )

        self._metrics.counter(TICKETS_CANCELLED).inc()
        audit_logger.info("Ticket %s cancelled by %s: %s", ticket_id, actor, reason or "no reason given")
        return await self.get_ticket(ticket_id)

    async def list_scans(self, ticket_id: str) -> Sequence[ScanLogEntry]:
        return await self._store.list_scans(ticket_id)
