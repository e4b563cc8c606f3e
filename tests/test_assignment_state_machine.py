import pytest

from scm_dispatch.exceptions import InvalidTransitionError
from scm_dispatch.services.assignment_state_machine import (
    can_advance_order,
    can_transition,
    get_allowed_transitions,
    is_assignable,
    is_terminal,
    validate_transition,
)


class TestAssignmentTransitions:
    @pytest.mark.parametrize("new_status", ["accepted", "rejected", "busy", "expired", "cancelled"])
    def test_pending_can_move_anywhere(self, new_status):
        assert can_transition("pending", new_status)

    def test_busy_can_return_to_pending(self):
        assert can_transition("busy", "pending")
        assert not can_transition("busy", "accepted")

    @pytest.mark.parametrize("status", ["accepted", "rejected", "expired", "cancelled"])
    def test_terminal_statuses(self, status):
        assert is_terminal(status)
        assert get_allowed_transitions(status) == []

    def test_invalid_transition_lists_allowed(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition("busy", "rejected")

        assert exc_info.value.status_code == 409
        assert exc_info.value.details["allowed"] == ["pending", "expired", "cancelled"]
        assert "Allowed transitions" in exc_info.value.message

    def test_terminal_transition_message(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            validate_transition("accepted", "accepted")

        assert "terminal state" in exc_info.value.message

    def test_unknown_status_is_rejected(self):
        with pytest.raises(ValueError):
            can_transition("pending", "delivered")


class TestOrderStatus:
    def test_forward_only(self):
        assert can_advance_order("created", "pending_carrier_assignment")
        assert can_advance_order("pending_carrier_assignment", "ready_to_ship")
        assert can_advance_order("pending_carrier_assignment", "on_hold")
        assert not can_advance_order("ready_to_ship", "pending_carrier_assignment")

    def test_ready_and_hold_do_not_swap(self):
        assert not can_advance_order("ready_to_ship", "on_hold")
        assert not can_advance_order("on_hold", "ready_to_ship")

    def test_same_status_is_allowed(self):
        assert can_advance_order("on_hold", "on_hold")

    def test_assignable_orders(self):
        assert is_assignable("created")
        assert is_assignable("pending_carrier_assignment")
        assert not is_assignable("on_hold")
        assert not is_assignable("shipped")
