"""Fee webhook and enrollment API routes."""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..billing.base import EnrollmentError
from .router import SIGNATURE_HEADER, WebhookError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/fees", tags=["fees"])


ENROLLMENT_ERROR_STATUS = {
    "member_not_found": 404,
    "already_subscribed": 409,
    "processor_timeout": 504,
}


# Request/Response models

class WebhookAck(BaseModel):
    """Webhook acknowledgement."""
    received: bool = True


class SubscriptionCreate(BaseModel):
    """Start a standing subscription for a member."""
    tenant_id: str = Field(..., min_length=1)
    member_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class SubscriptionCheckoutResponse(BaseModel):
    """Checkout session the member completes to subscribe."""
    session_id: str
    checkout_url: Optional[str] = None
    transaction_id: Optional[str] = None


def get_engine(request: Request):
    """Billing engine injected at app creation."""
    return request.app.state.engine


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(request: Request, engine=Depends(get_engine)):
    """
    Receive a processor event.

    The raw body is verified against the signature header before anything
    is parsed. Unknown event types are acknowledged and ignored.
    """
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        await engine.handle_webhook(payload, signature)
    except WebhookError as e:
        return JSONResponse(status_code=400, content={"error": e.message, "code": e.code})
    except Exception:
        logger.exception("webhook_processing_failed")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    return WebhookAck()


@router.post("/subscriptions", response_model=SubscriptionCheckoutResponse, status_code=201)
async def create_subscription(data: SubscriptionCreate, engine=Depends(get_engine)):
    """Open a subscription checkout session for a member."""
    try:
        result = await engine.enroll(
            data.tenant_id,
            data.member_id,
            success_url=data.success_url,
            cancel_url=data.cancel_url,
        )
    except EnrollmentError as e:
        raise HTTPException(status_code=ENROLLMENT_ERROR_STATUS.get(e.code, 400), detail=e.message)

    return SubscriptionCheckoutResponse(
        session_id=result.session_id,
        checkout_url=result.checkout_url,
        transaction_id=result.transaction_id,
    )
