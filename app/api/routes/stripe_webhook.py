from __future__ import annotations

import structlog
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.commerce.confirmation.errors import MissingCorrelationError, UnknownEnrollmentError
from app.commerce.confirmation.service import handle_payment_event
from app.services.payments_gateway import (
    STRIPE_SIGNATURE_HEADER,
    InvalidSignatureError,
    InvalidWebhookPayloadError,
    verify_webhook_event,
)

router = APIRouter(tags=["payments"])
logger = structlog.get_logger(__name__)


def _error(code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": message, "code": code},
    )


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request) -> JSONResponse:
    payload = await request.body()
    try:
        event = verify_webhook_event(payload, request.headers.get(STRIPE_SIGNATURE_HEADER))
    except InvalidSignatureError:
        logger.warning("payment_webhook_rejected", reason="invalid_signature")
        return _error("INVALID_SIGNATURE", "Webhook signature verification failed")
    except InvalidWebhookPayloadError:
        logger.warning("payment_webhook_rejected", reason="invalid_payload")
        return _error("INVALID_PAYLOAD", "Webhook body could not be parsed")

    try:
        result = await handle_payment_event(event)
    except MissingCorrelationError:
        logger.warning("payment_webhook_rejected", reason="missing_correlation", event_id=event.get("id"))
        return _error("MISSING_ENROLLMENT_ID", "Event does not reference an enrollment")
    except UnknownEnrollmentError:
        logger.warning("payment_webhook_rejected", reason="enrollment_not_found", event_id=event.get("id"))
        return _error("ENROLLMENT_NOT_FOUND", "Enrollment not found")

    # Delivery is acknowledged once the ledger has the event, whatever the side effects did.
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "received": True,
            "outcome": result.outcome,
            "duplicate": result.duplicate,
        },
    )
