from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TicketClass(str, Enum):
    """Ticket categories sold by the storefront."""

    REGULAR = "regular"
    VIP = "vip"
    STUDENT = "student"
    CHILD = "child"


@dataclass(frozen=True, slots=True)
class TicketClaims:
    """Facts about a purchased ticket that get signed into its credential."""

    ticket_id: str
    event_id: str
    holder_id: str
    ticket_class: TicketClass
    issued_at: datetime


@dataclass(frozen=True, slots=True)
class TicketCredential:
    """Decoded and verified claims of a ticket's QR payload."""

    ticket_id: str
    event_id: str
    holder_id: str
    ticket_class: TicketClass
    issued_at: datetime
    nonce: bytes
    signature: bytes


@dataclass(frozen=True, slots=True)
class IssuedCredential:
    """A freshly signed credential together with the payload embedded in the QR code."""

    credential: TicketCredential
    payload: str

    @property
    def payload_bytes(self) -> bytes:
        return self.payload.encode("ascii")
