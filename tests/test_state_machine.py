import pytest

from chatrelay.services.state_machine import (
    HandoffState,
    InvalidTransitionError,
    can_transition,
    hand_off,
    reactivate,
    state_of,
    transition,
)


class TestValidTransitions:
    def test_automated_to_human(self):
        result = transition(HandoffState.AUTOMATED, HandoffState.HUMAN)
        assert result == HandoffState.HUMAN

    def test_human_to_automated(self):
        result = transition(HandoffState.HUMAN, HandoffState.AUTOMATED)
        assert result == HandoffState.AUTOMATED


class TestInvalidTransitions:
    def test_same_state_automated(self):
        with pytest.raises(InvalidTransitionError):
            transition(HandoffState.AUTOMATED, HandoffState.AUTOMATED)

    def test_same_state_human(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(HandoffState.HUMAN, HandoffState.HUMAN)
        assert exc_info.value.from_state == HandoffState.HUMAN
        assert "human -> human" in str(exc_info.value)


class TestHelperFunctions:
    def test_hand_off(self):
        assert hand_off(HandoffState.AUTOMATED) == HandoffState.HUMAN

    def test_hand_off_twice_fails(self):
        with pytest.raises(InvalidTransitionError):
            hand_off(HandoffState.HUMAN)

    def test_reactivate(self):
        assert reactivate(HandoffState.HUMAN) == HandoffState.AUTOMATED

    def test_reactivate_from_automated_fails(self):
        with pytest.raises(InvalidTransitionError):
            reactivate(HandoffState.AUTOMATED)

    def test_state_of_flag(self):
        assert state_of(True) == HandoffState.AUTOMATED
        assert state_of(False) == HandoffState.HUMAN


class TestCanTransition:
    def test_can_transition_true(self):
        assert can_transition(HandoffState.AUTOMATED, HandoffState.HUMAN) is True

    def test_can_transition_false(self):
        assert can_transition(HandoffState.AUTOMATED, HandoffState.AUTOMATED) is False
