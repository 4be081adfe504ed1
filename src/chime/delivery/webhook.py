"""Webhook delivery over HTTP (group-bot style JSON payloads)."""

from __future__ import annotations

import time
from typing import Any

import httpx

from chime.delivery.types import DeliveryOptions, DeliveryResult
from chime.infrastructure.config import DELIVERY_TIMEOUT
from chime.infrastructure.logger import logger

# Bot error codes worth another attempt: network error, system busy, server error
RETRYABLE_ERRCODES = {-1, 310000, 300001}


def build_payload(message: str, options: DeliveryOptions) -> dict[str, Any]:
    payload: dict[str, Any] = {"msgtype": options.message_format}
    if options.message_format == "markdown":
        payload["markdown"] = {"title": options.title, "text": message}
    else:
        payload["text"] = {"content": message}

    if options.mentions or options.mention_all:
        payload["at"] = {"atMobiles": list(options.mentions), "isAtAll": options.mention_all}
    return payload


class WebhookDelivery:
    """POSTs messages to a webhook URL and maps the response to a DeliveryResult."""

    def __init__(self, timeout: float = DELIVERY_TIMEOUT, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = timeout
        self._client = client

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, target: str, message: str, options: DeliveryOptions) -> DeliveryResult:
        if not message.strip():
            return DeliveryResult(success=False, code="empty_message", message="Message content is empty", retryable=False)

        payload = build_payload(message, options)
        client = await self._ensure_client()
        start_time = time.time()

        try:
            response = await client.post(target, json=payload, timeout=self._timeout)
        except httpx.TimeoutException:
            logger.warning("Webhook timeout", url=_redact(target), timeout=self._timeout)
            return DeliveryResult(success=False, code="timeout", message=f"Timeout after {self._timeout}s")
        except httpx.HTTPError as err:
            logger.warning("Webhook HTTP error", url=_redact(target), error=str(err))
            return DeliveryResult(success=False, code="http_error", message=str(err))

        elapsed_ms = int((time.time() - start_time) * 1000)

        if 400 <= response.status_code < 500:
            logger.warning("Webhook client error", status_code=response.status_code, body=response.text[:200])
            return DeliveryResult(
                success=False,
                code=response.status_code,
                message=f"Client error: {response.status_code}",
                retryable=False,
            )
        if not 200 <= response.status_code < 300:
            logger.warning("Webhook unexpected status", status_code=response.status_code, body=response.text[:200])
            return DeliveryResult(
                success=False, code=response.status_code, message=f"Unexpected status: {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError:
            body = {}
        errcode = body.get("errcode", 0) if isinstance(body, dict) else 0
        errmsg = body.get("errmsg", "") if isinstance(body, dict) else ""

        if errcode == 0:
            logger.info("Webhook delivered", status_code=response.status_code, duration_ms=elapsed_ms)
            return DeliveryResult(success=True, code=0, message=errmsg or "ok")

        logger.warning("Webhook rejected message", errcode=errcode, errmsg=errmsg)
        return DeliveryResult(success=False, code=errcode, message=errmsg, retryable=errcode in RETRYABLE_ERRCODES)


def _redact(url: str) -> str:
    # Webhook URLs embed access tokens in the query string
    return url.split("?", 1)[0]
