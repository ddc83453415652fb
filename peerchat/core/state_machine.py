import logging
from enum import Enum, auto

from peerchat.utils.error_codes import InvalidStateTransition

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = auto()
    NEGOTIATING = auto()
    OPEN = auto()
    CHATTING = auto()
    CLOSED = auto()


ALLOWED_TRANSITIONS = {
    SessionState.IDLE: {SessionState.NEGOTIATING, SessionState.CLOSED},
    SessionState.NEGOTIATING: {SessionState.OPEN, SessionState.CLOSED},
    SessionState.OPEN: {SessionState.CHATTING, SessionState.CLOSED},
    SessionState.CHATTING: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class StateMachine:
    def __init__(self, on_change=None):
        self.current_state = SessionState.IDLE
        self.on_change = on_change

    @property
    def closed(self) -> bool:
        return self.current_state is SessionState.CLOSED

    def transition_to(self, new_state: SessionState) -> bool:
        """
        Moves to `new_state`, returning False for the CLOSED -> CLOSED no-op.
        Raises InvalidStateTransition for any transition outside the lifecycle.
        """
        if new_state is SessionState.CLOSED and self.closed:
            return False
        if new_state not in ALLOWED_TRANSITIONS[self.current_state]:
            raise InvalidStateTransition(
                f"Cannot move from {self.current_state.name} to {new_state.name}")
        logger.debug("Session state %s -> %s", self.current_state.name, new_state.name)
        self.current_state = new_state
        if self.on_change:
            self.on_change(new_state)
        return True
