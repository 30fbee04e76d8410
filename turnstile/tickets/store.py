from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from typing import Protocol, Sequence

from turnstile.credentials.models import TicketClass
from turnstile.errors import TurnstileError

from .models import ScanLogEntry, TicketRecord
from .state import TicketStateMachine, TicketStatus


class StoreError(TurnstileError):
    """Base error raised by ticket store implementations."""


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached; the outcome of the call is unknown."""

    retryable = True


class TicketAlreadyExistsError(StoreError):
    """Raised when a ticket id is created twice."""


class TicketRecordStore(Protocol):
    """Operations the ticketing core needs from the authoritative ticket store.

    ``try_mark_used`` and ``try_cancel`` must be atomic conditional writes: they
    change the record only while it still has ``expected_status`` and report
    whether they did.
    """

    async def get(self, ticket_id: str) -> TicketRecord | None:
        ...

    async def create(
        self,
        ticket_id: str,
        event_id: str,
        holder_id: str,
        *,
        ticket_class: TicketClass,
        credential: str | None = None,
    ) -> TicketRecord:
        ...

    async def try_mark_used(
        self,
        ticket_id: str,
        *,
        used_at: datetime,
        gate_id: str | None = None,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
    ) -> bool:
        ...

    async def try_cancel(
        self,
        ticket_id: str,
        *,
        cancelled_at: datetime,
        reason: str | None = None,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
    ) -> bool:
        ...

    async def record_scan(self, entry: ScanLogEntry) -> None:
        ...

    async def list_scans(self, ticket_id: str) -> Sequence[ScanLogEntry]:
        ...


class InMemoryTicketStore:
    """Process-local store used by tests and single-process gate deployments.

    Each conditional write performs its read-check-write without awaiting, so it
    cannot interleave with another coroutine on the same event loop.
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self._records: dict[str, TicketRecord] = {}
        self._scans: list[ScanLogEntry] = []
        self._latency = latency

    async def _round_trip(self) -> None:
        await asyncio.sleep(self._latency)

    async def get(self, ticket_id: str) -> TicketRecord | None:
        await self._round_trip()
        return self._records.get(ticket_id)

    async def create(
        self,
        ticket_id: str,
        event_id: str,
        holder_id: str,
        *,
        ticket_class: TicketClass,
        credential: str | None = None,
    ) -> TicketRecord:
        await self._round_trip()
        if ticket_id in self._records:
            raise TicketAlreadyExistsError(f"Ticket {ticket_id} already exists")
        record = TicketRecord(
            ticket_id=ticket_id,
            event_id=event_id,
            holder_id=holder_id,
            ticket_class=TicketClass(ticket_class),
            status=TicketStateMachine.initial_state(),
            created_at=datetime.now(timezone.utc),
            credential=credential,
        )
        self._records[ticket_id] = record
        return record

    async def try_mark_used(
        self,
        ticket_id: str,
        *,
        used_at: datetime,
        gate_id: str | None = None,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
    ) -> bool:
        await self._round_trip()
        return self._transition(
            ticket_id,
            expected_status,
            TicketStatus.USED,
            used_at=used_at,
            used_by_gate=gate_id,
        )

    async def try_cancel(
        self,
        ticket_id: str,
        *,
        cancelled_at: datetime,
        reason: str | None = None,
        expected_status: TicketStatus = TicketStatus.ACTIVE,
    ) -> bool:
        await self._round_trip()
        return self._transition(
            ticket_id,
            expected_status,
            TicketStatus.CANCELLED,
            cancelled_at=cancelled_at,
            cancellation_reason=reason,
        )

    async def record_scan(self, entry: ScanLogEntry) -> None:
        await self._round_trip()
        self._scans.append(entry)

    async def list_scans(self, ticket_id: str) -> Sequence[ScanLogEntry]:
        await self._round_trip()
        return [entry for entry in self._scans if entry.ticket_id == ticket_id]

    def _transition(
        self,
        ticket_id: str,
        expected: TicketStatus,
        target: TicketStatus,
        **changes: object,
    ) -> bool:
        record = self._records.get(ticket_id)
        if record is None or record.status != expected:
            return False
        if not TicketStateMachine.can_transition(record.status, target):
            return False
        self._records[ticket_id] = replace(record, status=target, **changes)
        return True
