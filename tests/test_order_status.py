"""Tests for the order and payment status transition rules."""

import pytest

from zyra_store.errors import ValidationError
from zyra_store.order_status import (
    CANCELLED,
    DELIVERED,
    FAILED,
    ORDER_TRANSITIONS,
    PENDING,
    PROCESSING,
    REFUNDED,
    SHIPPED,
    SUCCEEDED,
    can_transition_order,
    can_transition_payment,
    ensure_order_transition,
    ensure_payment_transition,
    payment_status_for_intent,
)


class TestOrderTransitions:
    @pytest.mark.parametrize(
        "current,requested",
        [
            (PENDING, PROCESSING),
            (PENDING, CANCELLED),
            (PROCESSING, SHIPPED),
            (PROCESSING, CANCELLED),
            (SHIPPED, DELIVERED),
            (SHIPPED, CANCELLED),
        ],
    )
    def test_allowed_transitions(self, current, requested):
        assert can_transition_order(current, requested)
        assert ensure_order_transition(current, requested) == requested

    @pytest.mark.parametrize(
        "current,requested",
        [
            (PENDING, SHIPPED),
            (PENDING, DELIVERED),
            (PROCESSING, PENDING),
            (SHIPPED, PROCESSING),
            (DELIVERED, CANCELLED),
            (CANCELLED, PROCESSING),
            (REFUNDED, PROCESSING),
        ],
    )
    def test_rejected_transitions(self, current, requested):
        assert not can_transition_order(current, requested)
        with pytest.raises(ValidationError) as excinfo:
            ensure_order_transition(current, requested)
        assert excinfo.value.status_code == 400
        assert f"from {current} to {requested}" in excinfo.value.message

    def test_terminal_statuses_have_no_exits(self):
        for status in (DELIVERED, CANCELLED, REFUNDED):
            assert ORDER_TRANSITIONS[status] == frozenset()

    def test_requested_status_is_normalized(self):
        assert ensure_order_transition("pending", " processing ") == PROCESSING

    def test_unknown_status_lists_allowed_values(self):
        with pytest.raises(ValidationError) as excinfo:
            ensure_order_transition(PENDING, "LOST")
        assert "allowed" in excinfo.value.details

    def test_rejection_reports_allowed_targets(self):
        with pytest.raises(ValidationError) as excinfo:
            ensure_order_transition(PROCESSING, DELIVERED)
        assert excinfo.value.details["allowed"] == [CANCELLED, SHIPPED]


class TestPaymentTransitions:
    def test_pending_can_settle_either_way(self):
        assert can_transition_payment(PENDING, SUCCEEDED)
        assert can_transition_payment(PENDING, FAILED)
        assert can_transition_payment(PENDING, CANCELLED)

    def test_only_succeeded_payments_refund(self):
        assert can_transition_payment(SUCCEEDED, REFUNDED)
        assert not can_transition_payment(PENDING, REFUNDED)
        assert not can_transition_payment(FAILED, REFUNDED)

    def test_failed_payment_cannot_succeed_later(self):
        with pytest.raises(ValidationError):
            ensure_payment_transition(FAILED, SUCCEEDED)

    def test_refunded_is_terminal(self):
        with pytest.raises(ValidationError):
            ensure_payment_transition(REFUNDED, SUCCEEDED)


@pytest.mark.parametrize(
    "intent_status,last_payment_error,expected",
    [
        ("succeeded", None, SUCCEEDED),
        ("requires_payment_method", None, PENDING),
        ("requires_payment_method", {"message": "Your card was declined."}, FAILED),
        ("canceled", None, CANCELLED),
        ("processing", None, PENDING),
        ("requires_action", None, PENDING),
        (None, None, PENDING),
    ],
)
def test_payment_status_for_intent(intent_status, last_payment_error, expected):
    assert payment_status_for_intent(intent_status, last_payment_error) == expected
