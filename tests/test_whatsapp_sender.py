from __future__ import annotations

import json

import httpx
import pytest

from queueflow.notifications.sender import DisabledSender, WhatsAppSender, normalize_phone
from queueflow.queue.errors import DeliveryFailure

API_URL = "https://gateway.example.com/send"


def _sender(handler) -> WhatsAppSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WhatsAppSender(api_url=API_URL, token="secret-token", country_code="62", client=client)


def test_normalize_phone_keeps_digits_only():
    assert normalize_phone("+62 812-3456 789") == "628123456789"
    assert normalize_phone("") == ""


@pytest.mark.asyncio
async def test_send_posts_payload_with_token():
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"status": True, "detail": "sent"})

    sender = _sender(handler)
    result = await sender.send("0812-3456-789", "Hello")

    assert result.delivered
    request = captured[0]
    assert str(request.url) == API_URL
    assert request.headers["Authorization"] == "secret-token"
    assert json.loads(request.content) == {"target": "08123456789", "message": "Hello", "countryCode": "62"}


@pytest.mark.asyncio
async def test_gateway_rejection_raises_delivery_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": False, "reason": "invalid token"})

    with pytest.raises(DeliveryFailure, match="invalid token"):
        await _sender(handler).send("0812", "Hello")


@pytest.mark.asyncio
async def test_http_error_status_raises_delivery_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    with pytest.raises(DeliveryFailure, match="503"):
        await _sender(handler).send("0812", "Hello")


@pytest.mark.asyncio
async def test_transport_error_raises_delivery_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DeliveryFailure):
        await _sender(handler).send("0812", "Hello")


@pytest.mark.asyncio
async def test_recipient_without_digits_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - never reached
        return httpx.Response(200)

    with pytest.raises(DeliveryFailure):
        await _sender(handler).send("n/a", "Hello")


@pytest.mark.asyncio
async def test_disabled_sender_never_delivers():
    result = await DisabledSender().send("0812", "Hello")

    assert not result.delivered
    assert result.detail == "disabled"
