from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from turnstile.credentials.errors import CredentialError, InvalidSignatureError
from turnstile.credentials.models import TicketClass


class RedemptionOutcome(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Why a scan did not result in entry."""

    MALFORMED_PAYLOAD = "malformed_payload"
    INVALID_SIGNATURE = "invalid_signature"
    UNKNOWN_TICKET = "unknown_ticket"
    WRONG_EVENT = "wrong_event"
    TICKET_CANCELLED = "ticket_cancelled"
    ALREADY_USED = "already_used"
    STORE_UNAVAILABLE = "store_unavailable"


_OPERATOR_MESSAGES: dict[DenialReason, str] = {
    DenialReason.MALFORMED_PAYLOAD: "Unreadable code, please scan again",
    # Forgeries get the same wording as any other invalid ticket.
    DenialReason.INVALID_SIGNATURE: "Ticket invalid",
    DenialReason.UNKNOWN_TICKET: "Ticket not recognised",
    DenialReason.WRONG_EVENT: "Ticket is for a different event",
    DenialReason.TICKET_CANCELLED: "Ticket has been cancelled",
    DenialReason.ALREADY_USED: "Ticket already used",
    DenialReason.STORE_UNAVAILABLE: "Ticket system unreachable, try again",
}


@dataclass(frozen=True, slots=True)
class RedemptionResult:
    """Decision taken by the redemption engine for one credential."""

    outcome: RedemptionOutcome
    ticket_id: str
    event_id: str
    ticket_class: TicketClass
    reason: DenialReason | None = None
    used_at: datetime | None = None
    used_by_gate: str | None = None
    detail: str | None = None

    @property
    def granted(self) -> bool:
        return self.outcome is RedemptionOutcome.GRANTED


@dataclass(frozen=True, slots=True)
class OperatorResult:
    """What a gate operator's screen shows for one scan."""

    outcome: RedemptionOutcome
    message: str
    reason: DenialReason | None = None
    ticket_class: TicketClass | None = None
    used_at: datetime | None = None
    retryable: bool = False

    @property
    def granted(self) -> bool:
        return self.outcome is RedemptionOutcome.GRANTED

    @classmethod
    def from_redemption(cls, result: RedemptionResult) -> "OperatorResult":
        if result.granted:
            return cls(
                outcome=RedemptionOutcome.GRANTED,
                message="Entry granted",
                ticket_class=result.ticket_class,
                used_at=result.used_at,
            )
        reason = result.reason or DenialReason.UNKNOWN_TICKET
        message = _OPERATOR_MESSAGES[reason]
        if reason is DenialReason.ALREADY_USED and result.used_at is not None:
            message = f"{message} at {result.used_at:%H:%M}"
        return cls(
            outcome=RedemptionOutcome.DENIED,
            message=message,
            reason=reason,
            ticket_class=result.ticket_class,
            used_at=result.used_at,
        )

    @classmethod
    def from_decode_error(cls, error: CredentialError) -> "OperatorResult":
        reason = (
            DenialReason.INVALID_SIGNATURE
            if isinstance(error, InvalidSignatureError)
            else DenialReason.MALFORMED_PAYLOAD
        )
        return cls(outcome=RedemptionOutcome.DENIED, message=_OPERATOR_MESSAGES[reason], reason=reason)

    @classmethod
    def store_unavailable(cls) -> "OperatorResult":
        reason = DenialReason.STORE_UNAVAILABLE
        return cls(
            outcome=RedemptionOutcome.DENIED,
            message=_OPERATOR_MESSAGES[reason],
            reason=reason,
            retryable=True,
        )
