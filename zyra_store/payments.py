"""Thin wrapper over the Stripe SDK.

Route handlers only ever see plain dictionaries so the rest of the
application (and the test suite) never depends on ``StripeObject`` internals.
"""

import json
import logging
from typing import Dict, Optional

import stripe

from .errors import PaymentProviderError, ValidationError

logger = logging.getLogger(__name__)

INTENT_FIELDS = (
    "id",
    "status",
    "client_secret",
    "amount",
    "currency",
    "latest_charge",
    "last_payment_error",
)
REFUND_FIELDS = ("id", "status", "amount", "currency", "payment_intent")


def _to_plain_dict(stripe_object, fields) -> Dict[str, object]:
    if isinstance(stripe_object, dict):
        return {field: stripe_object.get(field) for field in fields}
    return {field: getattr(stripe_object, field, None) for field in fields}


class StripeGateway:
    def __init__(
        self,
        api_key: Optional[str],
        webhook_secret: Optional[str] = None,
        currency: str = "usd",
        webhook_tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.api_key = (api_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.currency = (currency or "usd").strip().lower()
        self.webhook_tolerance = webhook_tolerance

    def _require_api_key(self):
        if not self.api_key:
            raise PaymentProviderError("Stripe is not configured.")

    def create_payment_intent(
        self,
        amount_minor: int,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Dict[str, object]:
        self._require_api_key()
        if amount_minor <= 0:
            raise ValidationError("Payment amount must be greater than zero.")
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=(currency or self.currency).lower(),
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent create failed: %s", exc)
            raise PaymentProviderError(
                "Could not create the payment with Stripe.",
                {"provider_message": getattr(exc, "user_message", None) or str(exc)},
            ) from exc
        return _to_plain_dict(intent, INTENT_FIELDS)

    def retrieve_payment_intent(self, intent_id: str) -> Dict[str, object]:
        self._require_api_key()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent retrieve failed for %s: %s", intent_id, exc)
            raise PaymentProviderError("Could not load the payment from Stripe.") from exc
        return _to_plain_dict(intent, INTENT_FIELDS)

    def cancel_payment_intent(self, intent_id: str) -> Dict[str, object]:
        self._require_api_key()
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            logger.error("Stripe PaymentIntent cancel failed for %s: %s", intent_id, exc)
            raise PaymentProviderError("Could not cancel the payment with Stripe.") from exc
        return _to_plain_dict(intent, INTENT_FIELDS)

    def create_refund(
        self,
        intent_id: str,
        amount_minor: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, object]:
        self._require_api_key()
        params: Dict[str, object] = {"payment_intent": intent_id}
        if amount_minor:
            params["amount"] = amount_minor
        if reason:
            params["reason"] = reason
        try:
            refund = stripe.Refund.create(
                idempotency_key=idempotency_key, api_key=self.api_key, **params
            )
        except stripe.StripeError as exc:
            logger.error("Stripe refund failed for %s: %s", intent_id, exc)
            raise PaymentProviderError(
                "Could not refund the payment with Stripe.",
                {"provider_message": getattr(exc, "user_message", None) or str(exc)},
            ) from exc
        return _to_plain_dict(refund, REFUND_FIELDS)

    def verify_webhook(self, payload: bytes, signature_header: Optional[str]) -> Dict:
        """Check the ``Stripe-Signature`` header and return the event as a dict."""
        if not self.webhook_secret:
            raise PaymentProviderError("Stripe webhook secret is not configured.")
        if not signature_header:
            raise ValidationError("Missing Stripe signature.")
        try:
            stripe.Webhook.construct_event(
                payload,
                signature_header,
                self.webhook_secret,
                tolerance=self.webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature failure: %s", exc)
            raise ValidationError("Invalid Stripe signature.") from exc
        except ValueError as exc:
            raise ValidationError("Invalid webhook payload.") from exc

        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        event = json.loads(payload)
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload.")
        return event
