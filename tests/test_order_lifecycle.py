"""Tests for order status parsing and transitions."""

import pytest

from errors import InvalidStatusTransitionError, ValidationError
from order_lifecycle import (
    TERMINAL_STATES,
    OrderStatus,
    can_transition,
    ensure_transition,
    parse_status,
)


class TestParseStatus:
    def test_parses_canonical_values(self):
        assert parse_status("PAID") is OrderStatus.PAID

    def test_is_case_insensitive(self):
        assert parse_status(" shipped ") is OrderStatus.SHIPPED

    def test_maps_aliases(self):
        assert parse_status("DELIVERED") is OrderStatus.COMPLETED
        assert parse_status("cancelled") is OrderStatus.CANCELED

    @pytest.mark.parametrize("value", [None, "", "REFUNDED", 3])
    def test_rejects_unknown_values(self, value):
        with pytest.raises(ValidationError):
            parse_status(value)


class TestTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.PAID),
            (OrderStatus.PENDING, OrderStatus.CANCELED),
            (OrderStatus.PAID, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.COMPLETED),
        ],
    )
    def test_forward_transitions_allowed(self, current, target):
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PAID, OrderStatus.PENDING),
            (OrderStatus.PAID, OrderStatus.CANCELED),
            (OrderStatus.SHIPPED, OrderStatus.CANCELED),
            (OrderStatus.PENDING, OrderStatus.SHIPPED),
            (OrderStatus.COMPLETED, OrderStatus.SHIPPED),
            (OrderStatus.CANCELED, OrderStatus.PAID),
        ],
    )
    def test_other_transitions_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidStatusTransitionError):
            ensure_transition(current, target)

    def test_terminal_states(self):
        assert TERMINAL_STATES == {OrderStatus.COMPLETED, OrderStatus.CANCELED}
        for status in TERMINAL_STATES:
            assert not any(can_transition(status, target) for target in OrderStatus)
