from __future__ import annotations

from decimal import Decimal
from uuid import UUID

import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.commerce.checkout.service import cancel_checkout, initiate_checkout, preview_coupon
from app.commerce.checkout.types import CheckoutRejected, CheckoutRequest, FreeEnrollment
from app.services.coupon_codes import is_valid_email

router = APIRouter(tags=["checkout"])
logger = structlog.get_logger(__name__)


class CheckoutBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    course_id: str = Field(alias="courseId", min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=320)
    coupon_code: str | None = Field(default=None, alias="couponCode", max_length=64)
    affiliate_email: str | None = Field(default=None, alias="affiliateEmail", max_length=320)


class CancelEnrollmentBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enrollment_id: str | None = Field(default=None, alias="enrollmentId")


class CouponValidateBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    coupon_code: str = Field(alias="couponCode", min_length=1, max_length=64)
    course_id: str = Field(alias="courseId", min_length=1, max_length=128)
    email: str | None = Field(default=None, max_length=320)


def _rejection_response(rejection: CheckoutRejected) -> JSONResponse:
    return JSONResponse(
        status_code=rejection.http_status,
        content={
            "error": rejection.message,
            "code": rejection.code,
            "suggestions": list(rejection.suggestions),
            "retryable": rejection.retryable,
        },
    )


def _validation_error(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": message, "code": "VALIDATION_ERROR", "suggestions": [], "retryable": False},
    )


def _money(value: Decimal) -> float:
    return float(value)


@router.post("/api/checkout")
async def checkout(body: CheckoutBody) -> JSONResponse:
    if not is_valid_email(body.email):
        return _validation_error("A valid email address is required")
    affiliate_email = (body.affiliate_email or "").strip() or None
    if affiliate_email is not None and not is_valid_email(affiliate_email):
        return _validation_error("Please enter a valid affiliate email or leave empty")

    outcome = await initiate_checkout(
        CheckoutRequest(
            course_id=body.course_id,
            email=body.email,
            coupon_code=(body.coupon_code or "").strip() or None,
            affiliate_email=affiliate_email,
        )
    )
    if isinstance(outcome, CheckoutRejected):
        logger.info("checkout_rejected", code=outcome.code, course_id=body.course_id)
        return _rejection_response(outcome)
    if isinstance(outcome, FreeEnrollment):
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "directEnrollment": True,
                "enrollmentId": str(outcome.enrollment_id),
                "redirectUrl": outcome.redirect_url,
            },
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "checkoutUrl": outcome.checkout_url,
            "sessionId": outcome.session_id,
            "enrollmentId": str(outcome.enrollment_id),
        },
    )


@router.post("/api/cancel-enrollment")
async def cancel_enrollment(body: CancelEnrollmentBody) -> JSONResponse:
    raw_id = (body.enrollment_id or "").strip()
    if not raw_id:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "enrollmentId is required", "code": "MISSING_ENROLLMENT_ID"},
        )

    try:
        enrollment_id = UUID(raw_id)
    except ValueError:
        # Unknown ids are reported the same way as already-removed rows.
        return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "cancelled": False})

    cancelled = await cancel_checkout(enrollment_id)
    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True, "cancelled": cancelled})


@router.post("/api/coupons/validate")
async def validate_coupon(body: CouponValidateBody) -> JSONResponse:
    email = (body.email or "").strip() or None
    result = await preview_coupon(code=body.coupon_code, course_id=body.course_id, email=email)
    if isinstance(result, CheckoutRejected):
        return _rejection_response(result)

    pricing = result.pricing
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "valid": True,
            "couponCode": result.code,
            "discountPercentage": pricing.discount_percentage,
            "originalPrice": _money(pricing.original_price),
            "discountAmount": _money(pricing.discount_amount),
            "finalPrice": _money(pricing.final_price),
            "requiresPayment": pricing.requires_payment,
        },
    )
