from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from fastapi.testclient import TestClient

from app.api.routes import checkout as checkout_routes
from app.commerce.checkout.types import (
    CHECKOUT_CODE_COUPON_RESERVED,
    CHECKOUT_CODE_DUPLICATE_ENROLLMENT,
    CheckoutRejected,
    CheckoutRequest,
    FreeEnrollment,
    PaymentSessionCreated,
)
from app.commerce.coupons.pricing import compute_discount
from app.commerce.coupons.types import CouponPreview
from app.main import app


def test_checkout_returns_payment_session(monkeypatch) -> None:
    enrollment_id = uuid4()
    captured: list[CheckoutRequest] = []

    async def fake_initiate(request: CheckoutRequest):
        captured.append(request)
        return PaymentSessionCreated(
            enrollment_id=enrollment_id,
            session_id="cs_test_1",
            checkout_url="https://checkout.stripe.com/c/cs_test_1",
        )

    monkeypatch.setattr(checkout_routes, "initiate_checkout", fake_initiate)

    client = TestClient(app)
    response = client.post(
        "/api/checkout",
        json={
            "courseId": "blockchain-revolution",
            "email": "student@example.com",
            "couponCode": "  grant20-ab ",
            "affiliateEmail": "",
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "checkoutUrl": "https://checkout.stripe.com/c/cs_test_1",
        "sessionId": "cs_test_1",
        "enrollmentId": str(enrollment_id),
    }
    assert captured[0].coupon_code == "grant20-ab"
    assert captured[0].affiliate_email is None


def test_checkout_returns_direct_enrollment_for_free_grant(monkeypatch) -> None:
    enrollment_id = uuid4()

    async def fake_initiate(request: CheckoutRequest):
        return FreeEnrollment(enrollment_id=enrollment_id, redirect_url="https://example.com/success?free=1")

    monkeypatch.setattr(checkout_routes, "initiate_checkout", fake_initiate)

    client = TestClient(app)
    response = client.post(
        "/api/checkout",
        json={"courseId": "blockchain-revolution", "email": "student@example.com", "couponCode": "FREE100"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "directEnrollment": True,
        "enrollmentId": str(enrollment_id),
        "redirectUrl": "https://example.com/success?free=1",
    }


def test_checkout_maps_rejection_to_status_and_body(monkeypatch) -> None:
    async def fake_initiate(request: CheckoutRequest):
        return CheckoutRejected(
            code=CHECKOUT_CODE_DUPLICATE_ENROLLMENT,
            message="Already enrolled",
            http_status=409,
            suggestions=("Check your email",),
        )

    monkeypatch.setattr(checkout_routes, "initiate_checkout", fake_initiate)

    client = TestClient(app)
    response = client.post(
        "/api/checkout",
        json={"courseId": "blockchain-revolution", "email": "student@example.com"},
    )

    assert response.status_code == 409
    assert response.json() == {
        "error": "Already enrolled",
        "code": CHECKOUT_CODE_DUPLICATE_ENROLLMENT,
        "suggestions": ["Check your email"],
        "retryable": False,
    }


def test_checkout_rejects_invalid_email_before_calling_service(monkeypatch) -> None:
    async def fail_initiate(request: CheckoutRequest):
        raise AssertionError("service must not be called")

    monkeypatch.setattr(checkout_routes, "initiate_checkout", fail_initiate)

    client = TestClient(app)
    response = client.post("/api/checkout", json={"courseId": "course101", "email": "not-an-email"})
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    response = client.post(
        "/api/checkout",
        json={"courseId": "course101", "email": "student@example.com", "affiliateEmail": "broken@"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_cancel_enrollment_requires_id() -> None:
    client = TestClient(app)
    response = client.post("/api/cancel-enrollment", json={})

    assert response.status_code == 400
    assert response.json()["code"] == "MISSING_ENROLLMENT_ID"


def test_cancel_enrollment_treats_malformed_id_as_not_cancelled(monkeypatch) -> None:
    async def fail_cancel(enrollment_id):
        raise AssertionError("service must not be called")

    monkeypatch.setattr(checkout_routes, "cancel_checkout", fail_cancel)

    client = TestClient(app)
    response = client.post("/api/cancel-enrollment", json={"enrollmentId": "not-a-uuid"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "cancelled": False}


def test_cancel_enrollment_reports_service_result(monkeypatch) -> None:
    enrollment_id = uuid4()
    seen = []

    async def fake_cancel(received_id):
        seen.append(received_id)
        return True

    monkeypatch.setattr(checkout_routes, "cancel_checkout", fake_cancel)

    client = TestClient(app)
    response = client.post("/api/cancel-enrollment", json={"enrollmentId": str(enrollment_id)})

    assert response.status_code == 200
    assert response.json() == {"success": True, "cancelled": True}
    assert seen == [enrollment_id]


def test_validate_coupon_returns_price_preview(monkeypatch) -> None:
    async def fake_preview(*, code: str, course_id: str, email: str | None):
        return CouponPreview(
            code="GRANT20-AB",
            course_id=course_id,
            pricing=compute_discount(Decimal("499"), 20),
            expires_at=None,
        )

    monkeypatch.setattr(checkout_routes, "preview_coupon", fake_preview)

    client = TestClient(app)
    response = client.post(
        "/api/coupons/validate",
        json={"couponCode": "grant20-ab", "courseId": "blockchain-revolution", "email": "student@example.com"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "valid": True,
        "couponCode": "GRANT20-AB",
        "discountPercentage": 20,
        "originalPrice": 499.0,
        "discountAmount": 99.8,
        "finalPrice": 399.2,
        "requiresPayment": True,
    }


def test_validate_coupon_maps_reserved_coupon_to_conflict(monkeypatch) -> None:
    async def fake_preview(*, code: str, course_id: str, email: str | None):
        return CheckoutRejected(
            code=CHECKOUT_CODE_COUPON_RESERVED,
            message="Coupon is being used in another checkout",
            http_status=409,
            retryable=True,
        )

    monkeypatch.setattr(checkout_routes, "preview_coupon", fake_preview)

    client = TestClient(app)
    response = client.post(
        "/api/coupons/validate",
        json={"couponCode": "GRANT20-AB", "courseId": "blockchain-revolution"},
    )

    assert response.status_code == 409
    assert response.json()["retryable"] is True
