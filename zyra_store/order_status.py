"""Order and payment status rules.

Order statuses only move along ``ORDER_TRANSITIONS`` when a status update is
requested. Payment statuses mirror the payment processor and only move along
``PAYMENT_TRANSITIONS``. Refunds are driven by the payment side and move an
order to ``REFUNDED`` from any of ``ORDER_REFUNDABLE_STATUSES``.
"""

from typing import Dict, FrozenSet, Optional

from .errors import ValidationError

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SHIPPED = "SHIPPED"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"
REFUNDED = "REFUNDED"

SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"

ORDER_STATUSES = (PENDING, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REFUNDED)
PAYMENT_STATUSES = (PENDING, SUCCEEDED, FAILED, CANCELLED, REFUNDED)

ORDER_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, CANCELLED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({DELIVERED, CANCELLED}),
    DELIVERED: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({SUCCEEDED, FAILED, CANCELLED}),
    SUCCEEDED: frozenset({REFUNDED}),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}

# Customers may only cancel before shipment.
CUSTOMER_CANCELLABLE_STATUSES = frozenset({PENDING, PROCESSING})
ORDER_REFUNDABLE_STATUSES = frozenset({PROCESSING, SHIPPED, DELIVERED})
# Stock goes back on the shelf only if the parcel never left.
STOCK_RESTORING_STATUSES = frozenset({PENDING, PROCESSING})
IN_FLIGHT_PAYMENT_STATUSES = frozenset({PENDING, SUCCEEDED})
# A closed attempt can still be charged at Stripe (a decline retried with
# another card, or a cancel that never reached Stripe).
LATE_SUCCESS_PAYMENT_STATUSES = frozenset({FAILED, CANCELLED})

STATUS_EMAIL_STATUSES = frozenset({SHIPPED, DELIVERED, CANCELLED, REFUNDED})

# Stripe PaymentIntent.status -> local payment status. Statuses missing here
# (requires_payment_method, processing, requires_action, ...) leave the
# payment pending; requires_payment_method only counts as a failure once the
# intent carries a last_payment_error.
STRIPE_INTENT_STATUS_MAP = {
    "succeeded": SUCCEEDED,
    "canceled": CANCELLED,
}


def normalize_status(value: Optional[str]) -> str:
    return str(value or "").strip().upper()


def can_transition_order(current: str, requested: str) -> bool:
    return normalize_status(requested) in ORDER_TRANSITIONS.get(
        normalize_status(current), frozenset()
    )


def can_transition_payment(current: str, requested: str) -> bool:
    return normalize_status(requested) in PAYMENT_TRANSITIONS.get(
        normalize_status(current), frozenset()
    )


def ensure_order_transition(current: str, requested: str) -> str:
    """Return the normalized requested status or raise ``ValidationError``."""
    normalized = normalize_status(requested)
    if normalized not in ORDER_STATUSES:
        raise ValidationError(
            f"Unknown order status '{requested}'.",
            {"allowed": list(ORDER_STATUSES)},
        )
    current_status = normalize_status(current)
    if not can_transition_order(current_status, normalized):
        raise ValidationError(
            f"Invalid status transition from {current_status} to {normalized}.",
            {"allowed": sorted(ORDER_TRANSITIONS.get(current_status, ()))},
        )
    return normalized


def ensure_payment_transition(current: str, requested: str) -> str:
    normalized = normalize_status(requested)
    current_status = normalize_status(current)
    if not can_transition_payment(current_status, normalized):
        raise ValidationError(
            f"Invalid payment status transition from {current_status} to {normalized}."
        )
    return normalized


def payment_status_for_intent(intent_status: Optional[str], last_payment_error=None) -> str:
    normalized = str(intent_status or "").strip().lower()
    if normalized == "requires_payment_method" and last_payment_error:
        return FAILED
    return STRIPE_INTENT_STATUS_MAP.get(normalized, PENDING)
