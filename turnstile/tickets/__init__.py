"""Ticket records, their lifecycle and the stores holding them."""

from .models import ScanLogEntry, TicketRecord
from .service import InvalidTicketTransitionError, TicketNotFoundError, TicketService, TicketServiceError
from .state import TicketStateMachine, TicketStatus
from .store import (
    InMemoryTicketStore,
    StoreError,
    StoreUnavailableError,
    TicketAlreadyExistsError,
    TicketRecordStore,
)

__all__ = [
    "InMemoryTicketStore",
    "InvalidTicketTransitionError",
    "ScanLogEntry",
    "StoreError",
    "StoreUnavailableError",
    "TicketAlreadyExistsError",
    "TicketNotFoundError",
    "TicketRecord",
    "TicketRecordStore",
    "TicketService",
    "TicketServiceError",
    "TicketStateMachine",
    "TicketStatus",
]
