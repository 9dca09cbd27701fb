"""Processor webhook verification, routing and reconciliation."""

from .reconciliation import ReconciliationEngine, ReconciliationResult
from .router import (
    SIGNATURE_HEADER,
    ClassifiedEvent,
    EventKind,
    WebhookError,
    WebhookEventRouter,
    WebhookPayloadError,
    WebhookSignatureError,
)

__all__ = [
    "ClassifiedEvent",
    "EventKind",
    "ReconciliationEngine",
    "ReconciliationResult",
    "SIGNATURE_HEADER",
    "WebhookError",
    "WebhookEventRouter",
    "WebhookPayloadError",
    "WebhookSignatureError",
]
