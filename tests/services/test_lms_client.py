from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from app.services import lms_client
from app.services.lms_client import LmsEnrollmentResult, build_enrollment_request, normalize_base_url

_REAL_ASYNC_CLIENT = httpx.AsyncClient


def _settings(**overrides: object) -> SimpleNamespace:
    values = {
        "lms_base_url": "lms.example.com",
        "lms_api_key": "lms-key",
        "lms_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _install_transport(monkeypatch, handler) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    def client_factory(*args, **kwargs) -> httpx.AsyncClient:
        kwargs["transport"] = httpx.MockTransport(recording_handler)
        return _REAL_ASYNC_CLIENT(*args, **kwargs)

    monkeypatch.setattr(lms_client, "get_settings", lambda: _settings())
    monkeypatch.setattr(lms_client.httpx, "AsyncClient", client_factory)
    return seen


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "user_email": "student@example.com",
        "course_id": "blockchain-revolution",
        "paid_status": True,
        "payment_id": "pi_123",
        "amount": 399.2,
        "currency": "usd",
    }
    payload.update(overrides)
    return payload


def test_normalize_base_url_adds_scheme_and_strips_slash() -> None:
    assert normalize_base_url("lms.example.com/") == "https://lms.example.com"
    assert normalize_base_url("http://localhost:8000") == "http://localhost:8000"


def test_build_enrollment_request_omits_empty_optional_fields() -> None:
    body = build_enrollment_request(
        user_email="student@example.com",
        course_id="course101",
        payment_id=None,
        amount=None,
        currency=None,
    )
    assert body == {"user_email": "student@example.com", "course_id": "course101", "paid_status": True}


def test_already_enrolled_is_detected_from_error_text() -> None:
    assert LmsEnrollmentResult(success=False, error="User is Already Enrolled").already_enrolled is True
    assert LmsEnrollmentResult(success=False, error="boom").already_enrolled is False
    assert LmsEnrollmentResult(success=True).already_enrolled is False


@pytest.mark.asyncio
async def test_enroll_in_lms_unwraps_frappe_message_envelope(monkeypatch) -> None:
    seen = _install_transport(
        monkeypatch,
        lambda request: httpx.Response(200, json={"message": {"success": True, "enrollment_id": "ENR-1"}}),
    )

    result = await lms_client.enroll_in_lms(_payload(referral_code="partner@example.com"))

    assert result == LmsEnrollmentResult(success=True, enrollment_id="ENR-1")
    assert len(seen) == 1
    assert seen[0].url.path == lms_client.LMS_ENROLLMENT_PATH
    assert seen[0].headers["Authorization"] == "Bearer lms-key"


@pytest.mark.asyncio
async def test_enroll_in_lms_maps_http_errors_to_failure(monkeypatch) -> None:
    _install_transport(monkeypatch, lambda request: httpx.Response(500, text="internal error"))

    result = await lms_client.enroll_in_lms(_payload())

    assert result.success is False
    assert result.error is not None
    assert "500" in result.error


@pytest.mark.asyncio
async def test_enroll_in_lms_maps_timeouts_to_failure(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    _install_transport(monkeypatch, handler)

    result = await lms_client.enroll_in_lms(_payload())

    assert result == LmsEnrollmentResult(success=False, error="LMS request timed out")


@pytest.mark.asyncio
async def test_enroll_in_lms_rejects_invalid_input_without_calling(monkeypatch) -> None:
    seen = _install_transport(monkeypatch, lambda request: httpx.Response(200, json={"success": True}))

    bad_email = await lms_client.enroll_in_lms(_payload(user_email="not-an-email"))
    bad_course = await lms_client.enroll_in_lms(_payload(course_id="Bad Course"))

    assert bad_email.success is False
    assert bad_course.success is False
    assert seen == []
