import pytest

from turnstile.tickets.state import TicketStateMachine, TicketStatus


def test_ticket_state_machine_allows_expected_transitions():
    assert TicketStateMachine.initial_state() is TicketStatus.ACTIVE
    assert TicketStateMachine.can_transition(TicketStatus.ACTIVE, TicketStatus.USED)
    assert TicketStateMachine.can_transition(TicketStatus.ACTIVE, TicketStatus.CANCELLED)


@pytest.mark.parametrize("terminal", [TicketStatus.USED, TicketStatus.CANCELLED])
def test_terminal_states_are_sticky(terminal):
    assert TicketStateMachine.is_terminal(terminal)
    for target in TicketStatus:
        assert not TicketStateMachine.can_transition(terminal, target)
        with pytest.raises(ValueError):
            TicketStateMachine.assert_transition(terminal, target)


def test_active_is_not_terminal_and_cannot_reenter_itself():
    assert not TicketStateMachine.is_terminal(TicketStatus.ACTIVE)
    assert not TicketStateMachine.can_transition(TicketStatus.ACTIVE, TicketStatus.ACTIVE)
