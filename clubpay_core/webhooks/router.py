"""
Webhook Event Router

Authenticates processor events and classifies them into the kinds the
reconciliation engine understands.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog


logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
DEFAULT_TOLERANCE_SECONDS = 300


class WebhookError(Exception):
    """Base webhook error."""

    def __init__(self, message: str, code: str = "webhook_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class WebhookSignatureError(WebhookError):
    """Signature missing, malformed, stale or wrong."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_signature")


class WebhookPayloadError(WebhookError):
    """Body is not a processor event."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_payload")


class EventKind(str, Enum):
    """Reconciliation-relevant event kinds."""
    CHECKOUT_COMPLETED = "checkout-completed"
    CHARGE_SUCCEEDED = "charge-succeeded"
    INVOICE_PAID = "invoice-paid"
    CHARGE_FAILED = "charge-failed"
    INVOICE_FAILED = "invoice-failed"
    SUBSCRIPTION_CHANGED = "subscription-changed"
    OTHER = "other"


EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "payment_intent.succeeded": EventKind.CHARGE_SUCCEEDED,
    "charge.succeeded": EventKind.CHARGE_SUCCEEDED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "payment_intent.payment_failed": EventKind.CHARGE_FAILED,
    "charge.failed": EventKind.CHARGE_FAILED,
    "checkout.session.async_payment_failed": EventKind.CHARGE_FAILED,
    "invoice.payment_failed": EventKind.INVOICE_FAILED,
    "customer.subscription.paused": EventKind.SUBSCRIPTION_CHANGED,
    "customer.subscription.resumed": EventKind.SUBSCRIPTION_CHANGED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_CHANGED,
}


def _id_of(value: Any) -> Optional[str]:
    """Processor references arrive either as an id or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


@dataclass
class ClassifiedEvent:
    """An authenticated processor event with the fields reconciliation needs."""

    id: str
    type: str
    kind: EventKind
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> Dict[str, str]:
        metadata = self.data.get("metadata") or {}
        if not metadata and self.kind in (EventKind.INVOICE_PAID, EventKind.INVOICE_FAILED):
            details = self.data.get("subscription_details") or {}
            metadata = details.get("metadata") or {}
        return metadata

    @property
    def correlation_id(self) -> Optional[str]:
        """Id used to find the ledger entry this event belongs to."""
        if self.kind in (EventKind.CHARGE_SUCCEEDED, EventKind.CHARGE_FAILED):
            if self.type.startswith("charge."):
                return _id_of(self.data.get("payment_intent"))
        return _id_of(self.data.get("id"))

    @property
    def payment_intent_id(self) -> Optional[str]:
        if self.type.startswith("payment_intent."):
            return _id_of(self.data.get("id"))
        return _id_of(self.data.get("payment_intent"))

    @property
    def invoice_id(self) -> Optional[str]:
        if self.type.startswith("invoice."):
            return _id_of(self.data.get("id"))
        return _id_of(self.data.get("invoice"))

    @property
    def subscription_id(self) -> Optional[str]:
        if self.type.startswith("customer.subscription."):
            return _id_of(self.data.get("id"))
        return _id_of(self.data.get("subscription"))

    @property
    def settled_amount(self) -> Optional[int]:
        for key in ("amount_received", "amount_paid", "amount_total", "amount"):
            if self.data.get(key) is not None:
                return int(self.data[key])
        return None

    @property
    def failure_reason(self) -> str:
        error = self.data.get("last_payment_error") or {}
        reason = (
            error.get("message")
            or self.data.get("failure_message")
            or error.get("code")
            or self.data.get("failure_code")
        )
        return reason or self.type


class WebhookEventRouter:
    """
    Verifies the processor signature over the raw body, parses the event
    and classifies it. Nothing downstream runs for an event that fails
    verification.
    """

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self._secret = secret
        self._tolerance = tolerance_seconds

    def authenticate(self, payload: bytes, signature_header: Optional[str]) -> ClassifiedEvent:
        """
        Verify and classify a raw webhook request.

        Raises:
            WebhookSignatureError: signature invalid
            WebhookPayloadError: body is not a valid event
        """
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise WebhookPayloadError("Payload is not UTF-8")

        if not signature_header:
            logger.warning("webhook_signature_rejected", reason="missing")
            raise WebhookSignatureError("Missing signature header")

        try:
            stripe.Webhook.construct_event(
                body,
                signature_header,
                self._secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_rejected", reason=e.user_message)
            raise WebhookSignatureError(e.user_message or "Invalid signature")
        except ValueError as e:
            raise WebhookPayloadError(f"Invalid JSON: {e}")

        # Classification works on the plain JSON rather than the SDK object
        return self.classify(json.loads(body))

    def classify(self, event: Any) -> ClassifiedEvent:
        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise WebhookPayloadError("Event has no type")
        envelope = event.get("data")
        data = envelope.get("object") if isinstance(envelope, dict) else None
        if not isinstance(data, dict):
            raise WebhookPayloadError("Event has no data object")

        classified = ClassifiedEvent(
            id=str(event.get("id") or ""),
            type=event["type"],
            kind=EVENT_KINDS.get(event["type"], EventKind.OTHER),
            data=data,
        )
        logger.info(
            "webhook_received",
            event_id=classified.id,
            event_type=classified.type,
            kind=classified.kind.value,
        )
        return classified
