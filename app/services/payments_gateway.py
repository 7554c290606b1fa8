from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import stripe
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

STRIPE_SIGNATURE_HEADER = "Stripe-Signature"
WEBHOOK_TOLERANCE_SECONDS = 300
# Stripe accepts 30 minutes to 24 hours; the abandoned-checkout sweep waits longer than this.
CHECKOUT_SESSION_LIFETIME = timedelta(hours=23)


class PaymentsGatewayError(Exception):
    pass


class PaymentSessionError(PaymentsGatewayError):
    pass


class InvalidSignatureError(PaymentsGatewayError):
    pass


class InvalidWebhookPayloadError(PaymentsGatewayError):
    pass


@dataclass(frozen=True, slots=True)
class PaymentSession:
    session_id: str
    checkout_url: str


def build_line_item(
    *,
    title: str,
    description: str,
    unit_amount: int,
    currency: str,
) -> dict[str, Any]:
    return {
        "price_data": {
            "currency": currency,
            "product_data": {"name": title, "description": description},
            "unit_amount": unit_amount,
        },
        "quantity": 1,
    }


async def create_checkout_session(
    *,
    client_reference_id: str,
    customer_email: str,
    line_item: dict[str, Any],
    metadata: dict[str, str],
    success_url: str,
    cancel_url: str,
) -> PaymentSession:
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise PaymentSessionError("stripe secret key is not configured")

    expires_at = int((datetime.now(timezone.utc) + CHECKOUT_SESSION_LIFETIME).timestamp())

    def create_call() -> Any:
        return stripe.checkout.Session.create(
            api_key=settings.stripe_secret_key,
            mode="payment",
            payment_method_types=["card"],
            customer_email=customer_email,
            client_reference_id=client_reference_id,
            line_items=[line_item],
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
            expires_at=expires_at,
        )

    try:
        checkout_session = await asyncio.to_thread(create_call)
    except stripe.StripeError as exc:
        logger.warning(
            "payment_session_create_failed",
            client_reference_id=client_reference_id,
            error_type=type(exc).__name__,
        )
        raise PaymentSessionError(exc.user_message or "payment session creation failed") from exc

    if not checkout_session.url:
        raise PaymentSessionError("payment provider returned a session without a checkout url")

    logger.info(
        "payment_session_created",
        client_reference_id=client_reference_id,
        payment_session_id=checkout_session.id,
    )
    return PaymentSession(session_id=checkout_session.id, checkout_url=checkout_session.url)


def verify_webhook_event(payload: bytes, signature_header: str | None) -> dict[str, Any]:
    if not signature_header:
        raise InvalidSignatureError("missing signature header")

    secret = get_settings().stripe_webhook_secret
    if not secret:
        raise InvalidSignatureError("webhook secret is not configured")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            secret,
            tolerance=WEBHOOK_TOLERANCE_SECONDS,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        raise InvalidSignatureError("signature verification failed") from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise InvalidWebhookPayloadError("webhook body is not valid json") from exc
    if not isinstance(event, dict):
        raise InvalidWebhookPayloadError("webhook body is not an object")
    return event
