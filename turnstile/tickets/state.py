from __future__ import annotations

from enum import Enum


class TicketStatus(str, Enum):
    """Lifecycle states of a sold ticket."""

    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"


class TicketStateMachine:
    """Validate ticket lifecycle transitions.

    Transitions only ever leave ``ACTIVE``; ``USED`` and ``CANCELLED`` are terminal.
    """

    _TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.ACTIVE: frozenset({TicketStatus.USED, TicketStatus.CANCELLED}),
        TicketStatus.USED: frozenset(),
        TicketStatus.CANCELLED: frozenset(),
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.ACTIVE

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return not cls._TRANSITIONS.get(status)

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise ValueError(f"Invalid ticket status transition: {current.value} -> {new.value}")
