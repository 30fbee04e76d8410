from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from turnstile.credentials.models import TicketClass

from .state import TicketStatus


@dataclass(frozen=True, slots=True)
class TicketRecord:
    """Authoritative state of a sold ticket as held by the ticket store."""

    ticket_id: str
    event_id: str
    holder_id: str
    ticket_class: TicketClass
    status: TicketStatus
    created_at: datetime
    used_at: datetime | None = None
    used_by_gate: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    credential: str | None = None


@dataclass(frozen=True, slots=True)
class ScanLogEntry:
    """Audit row describing one redemption decision taken at a gate."""

    id: str
    ticket_id: str | None
    event_id: str | None
    gate_id: str | None
    outcome: str
    reason: str | None
    scanned_at: datetime
    metadata: Mapping[str, Any] = field(default_factory=dict)
