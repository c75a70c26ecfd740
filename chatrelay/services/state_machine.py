from enum import Enum


class HandoffState(str, Enum):
    AUTOMATED = "automated"
    HUMAN = "human"


VALID_TRANSITIONS = {
    HandoffState.AUTOMATED: [HandoffState.HUMAN],
    HandoffState.HUMAN: [HandoffState.AUTOMATED],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: HandoffState, to_state: HandoffState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def state_of(automation_enabled: bool) -> HandoffState:
    return HandoffState.AUTOMATED if automation_enabled else HandoffState.HUMAN


def can_transition(from_state: HandoffState, to_state: HandoffState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: HandoffState, to_state: HandoffState) -> HandoffState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def hand_off(current_state: HandoffState) -> HandoffState:
    """Agent stops answering; a human takes over."""
    return transition(current_state, HandoffState.HUMAN)


def reactivate(current_state: HandoffState) -> HandoffState:
    """Operator hands the conversation back to the agent."""
    return transition(current_state, HandoffState.AUTOMATED)
