"""Outbound message gateways."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from queueflow.queue.errors import DeliveryFailure

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^0-9]")


@dataclass(slots=True, frozen=True)
class DeliveryResult:
    delivered: bool
    detail: str | None = None


class MessageSender(Protocol):
    async def send(self, recipient: str, text: str) -> DeliveryResult:
        ...


class DisabledSender:
    """Sender used when the WhatsApp gateway is switched off."""

    async def send(self, recipient: str, text: str) -> DeliveryResult:
        logger.info("WhatsApp disabled, skipping message to %s", recipient)
        return DeliveryResult(delivered=False, detail="disabled")


def normalize_phone(phone: str) -> str:
    """Strip everything but digits (``+62 812-3456`` -> ``628123456``)."""

    return _NON_DIGITS.sub("", phone or "")


class WhatsAppSender:
    """Fonnte-style WhatsApp HTTP gateway."""

    def __init__(
        self,
        *,
        api_url: str,
        token: str | None,
        country_code: str = "62",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._token = token
        self._country_code = country_code
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def send(self, recipient: str, text: str) -> DeliveryResult:
        target = normalize_phone(recipient)
        if not target:
            raise DeliveryFailure(f"Recipient {recipient!r} has no dialable digits")

        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = self._token
        payload: dict[str, Any] = {"target": target, "message": text, "countryCode": self._country_code}

        try:
            response = await self._client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryFailure(f"WhatsApp gateway request failed: {exc}") from exc

        if response.status_code >= 400:
            raise DeliveryFailure(f"WhatsApp gateway returned {response.status_code}: {response.text}")

        body = _json_or_none(response)
        if isinstance(body, dict) and body.get("status") is False:
            raise DeliveryFailure(str(body.get("reason") or "WhatsApp gateway rejected the message"))

        logger.info("WhatsApp message sent to %s", target)
        return DeliveryResult(delivered=True)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
