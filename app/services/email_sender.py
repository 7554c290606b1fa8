from __future__ import annotations

from functools import lru_cache
from typing import Any

import httpx
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

EMAIL_TEMPLATE_PAYMENT_CONFIRMATION = "payment_confirmation"
EMAIL_TEMPLATE_PARTIAL_GRANT_ENROLLMENT = "partial_grant_enrollment"
EMAIL_TEMPLATE_GRANT_ENROLLMENT = "grant_enrollment"


class EmailDeliveryError(Exception):
    pass


@lru_cache(maxsize=16)
def parse_template_ids(raw_mapping: str) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for raw_entry in raw_mapping.split(","):
        name, separator, template_id = raw_entry.partition("=")
        if not separator or not name.strip() or not template_id.strip():
            continue
        mapping[name.strip()] = template_id.strip()
    return mapping


def build_sendgrid_body(
    *,
    template_id: str,
    to_email: str,
    from_email: str,
    data: dict[str, Any],
) -> dict[str, Any]:
    return {
        "from": {"email": from_email},
        "personalizations": [
            {
                "to": [{"email": to_email}],
                "dynamic_template_data": data,
            }
        ],
        "template_id": template_id,
    }


async def send_template_email(*, template: str, to_email: str, data: dict[str, Any]) -> bool:
    settings = get_settings()
    if not settings.email_api_key:
        logger.info("email_send_skipped", template=template, reason="not_configured")
        return False

    template_id = parse_template_ids(settings.email_template_ids).get(template)
    if template_id is None:
        logger.warning("email_send_skipped", template=template, reason="unknown_template")
        return False

    body = build_sendgrid_body(
        template_id=template_id,
        to_email=to_email,
        from_email=settings.email_from,
        data=data,
    )
    async with httpx.AsyncClient(timeout=5.0) as client:
        response = await client.post(
            settings.email_api_url,
            json=body,
            headers={"Authorization": f"Bearer {settings.email_api_key}"},
        )
    if response.status_code >= 400:
        raise EmailDeliveryError(f"email service returned {response.status_code}")

    logger.info("email_sent", template=template)
    return True
