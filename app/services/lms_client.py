from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from app.core.config import get_settings
from app.services.coupon_codes import is_valid_course_slug, is_valid_email

logger = structlog.get_logger(__name__)

LMS_ENROLLMENT_PATH = "/api/method/lms.lms.payment_confirmation.confirm_payment"
LMS_ALREADY_ENROLLED_MARKERS = ("already enrolled", "already exists")
LMS_ERROR_MAX_LENGTH = 2000


@dataclass(frozen=True, slots=True)
class LmsEnrollmentResult:
    success: bool
    enrollment_id: str | None = None
    error: str | None = None

    @property
    def already_enrolled(self) -> bool:
        if self.success or not self.error:
            return False
        lowered = self.error.lower()
        return any(marker in lowered for marker in LMS_ALREADY_ENROLLED_MARKERS)


def normalize_base_url(raw_url: str) -> str:
    url = raw_url.strip().rstrip("/")
    if url and not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def build_enrollment_request(
    *,
    user_email: str,
    course_id: str,
    payment_id: str | None,
    amount: object | None,
    currency: str | None,
    referral_code: str | None = None,
    paid_status: bool = True,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "user_email": user_email,
        "course_id": course_id,
        "paid_status": paid_status,
    }
    if payment_id:
        body["payment_id"] = payment_id
    if amount is not None:
        body["amount"] = float(amount)
    if currency:
        body["currency"] = currency
    if referral_code:
        body["referral_code"] = referral_code
    return body


def _truncate_error(message: str) -> str:
    return message[:LMS_ERROR_MAX_LENGTH]


def _parse_response_body(payload: Any) -> LmsEnrollmentResult:
    if not isinstance(payload, dict):
        return LmsEnrollmentResult(success=False, error="unexpected LMS response shape")

    # Frappe wraps whitelisted method results in {"message": ...}.
    body = payload.get("message", payload)
    if not isinstance(body, dict):
        return LmsEnrollmentResult(success=False, error=_truncate_error(str(body)))

    if body.get("success") is True:
        enrollment_id = body.get("enrollment_id")
        return LmsEnrollmentResult(
            success=True,
            enrollment_id=str(enrollment_id) if enrollment_id is not None else None,
        )
    return LmsEnrollmentResult(
        success=False,
        error=_truncate_error(str(body.get("error") or "LMS enrollment failed")),
    )


async def enroll_in_lms(payload: dict[str, Any]) -> LmsEnrollmentResult:
    settings = get_settings()
    user_email = str(payload.get("user_email") or "")
    course_id = str(payload.get("course_id") or "")
    if not is_valid_email(user_email):
        return LmsEnrollmentResult(success=False, error=f"Invalid email format: {user_email!r}")
    if not is_valid_course_slug(course_id):
        return LmsEnrollmentResult(success=False, error=f"Invalid course ID format: {course_id!r}")

    base_url = normalize_base_url(settings.lms_base_url)
    if not base_url:
        return LmsEnrollmentResult(success=False, error="LMS base URL is not configured")

    body = build_enrollment_request(
        user_email=user_email,
        course_id=course_id,
        payment_id=payload.get("payment_id"),
        amount=payload.get("amount"),
        currency=payload.get("currency"),
        referral_code=payload.get("referral_code"),
        paid_status=bool(payload.get("paid_status", True)),
    )
    headers = {"Content-Type": "application/json"}
    if settings.lms_api_key:
        headers["Authorization"] = f"Bearer {settings.lms_api_key}"

    try:
        async with httpx.AsyncClient(timeout=settings.lms_timeout_seconds) as client:
            response = await client.post(f"{base_url}{LMS_ENROLLMENT_PATH}", json=body, headers=headers)
    except httpx.TimeoutException:
        logger.warning("lms_enrollment_timeout", course_id=course_id)
        return LmsEnrollmentResult(success=False, error="LMS request timed out")
    except httpx.HTTPError as exc:
        logger.warning("lms_enrollment_transport_error", course_id=course_id, error_type=type(exc).__name__)
        return LmsEnrollmentResult(success=False, error=_truncate_error(f"LMS request failed: {exc}"))

    if response.status_code >= 400:
        logger.warning("lms_enrollment_http_error", course_id=course_id, status_code=response.status_code)
        return LmsEnrollmentResult(
            success=False,
            error=_truncate_error(f"LMS returned {response.status_code}: {response.text}"),
        )

    try:
        payload_json = response.json()
    except ValueError:
        return LmsEnrollmentResult(success=False, error="LMS returned a non-JSON response")

    result = _parse_response_body(payload_json)
    logger.info(
        "lms_enrollment_response",
        course_id=course_id,
        success=result.success,
        lms_enrollment_id=result.enrollment_id,
    )
    return result
