from __future__ import annotations

from types import SimpleNamespace

import httpx
import pytest

from app.services import email_sender
from app.services.email_sender import EmailDeliveryError, build_sendgrid_body, parse_template_ids

_REAL_ASYNC_CLIENT = httpx.AsyncClient


def _settings(**overrides: object) -> SimpleNamespace:
    values = {
        "email_api_url": "https://api.sendgrid.com/v3/mail/send",
        "email_api_key": "sg-key",
        "email_from": "no-reply@example.com",
        "email_template_ids": "payment_confirmation=d-111,grant_enrollment=d-222",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _install_transport(monkeypatch, status_code: int) -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code)

    def client_factory(*args, **kwargs) -> httpx.AsyncClient:
        kwargs["transport"] = httpx.MockTransport(handler)
        return _REAL_ASYNC_CLIENT(*args, **kwargs)

    monkeypatch.setattr(email_sender.httpx, "AsyncClient", client_factory)
    return seen


def test_parse_template_ids_skips_malformed_entries() -> None:
    assert parse_template_ids("a=1, b = 2 ,broken,=3,c=") == {"a": "1", "b": "2"}


def test_build_sendgrid_body_uses_dynamic_template_data() -> None:
    body = build_sendgrid_body(
        template_id="d-111",
        to_email="student@example.com",
        from_email="no-reply@example.com",
        data={"courseTitle": "Blockchain"},
    )
    assert body["template_id"] == "d-111"
    assert body["personalizations"][0]["to"] == [{"email": "student@example.com"}]
    assert body["personalizations"][0]["dynamic_template_data"] == {"courseTitle": "Blockchain"}


@pytest.mark.asyncio
async def test_send_template_email_skips_when_not_configured(monkeypatch) -> None:
    monkeypatch.setattr(email_sender, "get_settings", lambda: _settings(email_api_key=""))
    seen = _install_transport(monkeypatch, 202)

    sent = await email_sender.send_template_email(
        template="payment_confirmation",
        to_email="student@example.com",
        data={},
    )

    assert sent is False
    assert seen == []


@pytest.mark.asyncio
async def test_send_template_email_posts_known_template(monkeypatch) -> None:
    monkeypatch.setattr(email_sender, "get_settings", lambda: _settings())
    seen = _install_transport(monkeypatch, 202)

    sent = await email_sender.send_template_email(
        template="grant_enrollment",
        to_email="student@example.com",
        data={"courseId": "course101"},
    )

    assert sent is True
    assert len(seen) == 1
    assert seen[0].headers["Authorization"] == "Bearer sg-key"


@pytest.mark.asyncio
async def test_send_template_email_raises_on_rejection(monkeypatch) -> None:
    monkeypatch.setattr(email_sender, "get_settings", lambda: _settings())
    _install_transport(monkeypatch, 400)

    with pytest.raises(EmailDeliveryError):
        await email_sender.send_template_email(
            template="payment_confirmation",
            to_email="student@example.com",
            data={},
        )
