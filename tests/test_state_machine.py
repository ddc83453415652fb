import pytest

from peerchat.core.state_machine import SessionState, StateMachine
from peerchat.utils.error_codes import ErrorCodes, InvalidStateTransition


def test_full_lifecycle_reports_each_state():
    seen = []
    machine = StateMachine(on_change=seen.append)
    for state in (SessionState.NEGOTIATING, SessionState.OPEN, SessionState.CHATTING, SessionState.CLOSED):
        assert machine.transition_to(state) is True
    assert seen == [SessionState.NEGOTIATING, SessionState.OPEN, SessionState.CHATTING, SessionState.CLOSED]
    assert machine.closed


@pytest.mark.parametrize("path", [
    [],
    [SessionState.NEGOTIATING],
    [SessionState.NEGOTIATING, SessionState.OPEN],
])
def test_any_state_can_close(path):
    machine = StateMachine()
    for state in path:
        machine.transition_to(state)
    machine.transition_to(SessionState.CLOSED)
    assert machine.current_state is SessionState.CLOSED


def test_closed_is_terminal():
    machine = StateMachine()
    machine.transition_to(SessionState.CLOSED)
    assert machine.transition_to(SessionState.CLOSED) is False
    with pytest.raises(InvalidStateTransition) as exc_info:
        machine.transition_to(SessionState.NEGOTIATING)
    assert exc_info.value.code == ErrorCodes.ERR_INVALID_STATE


def test_cannot_skip_negotiation():
    machine = StateMachine()
    with pytest.raises(InvalidStateTransition):
        machine.transition_to(SessionState.OPEN)
    assert machine.current_state is SessionState.IDLE
