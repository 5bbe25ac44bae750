from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from phonegate.config import SmsSettings
from phonegate.logging import get_logger
from phonegate.service.errors import ServerError
from phonegate.service.phone import mask_phone

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    delivered: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class SmsDeliveryChannel(Protocol):
    async def send(self, phone: str, template_id: str, code: str) -> DeliveryResult: ...


class HttpSmsGateway:
    """Delivers verification codes through an HTTP SMS gateway.

    Supports:
    - JSON POST to a configured gateway endpoint with a bounded timeout
    - Bearer API key authentication
    - Fallback to logging when not configured (dev mode)
    """

    def __init__(self, settings: Optional[SmsSettings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings or SmsSettings()
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.gateway_url)

    async def send(self, phone: str, template_id: str, code: str) -> DeliveryResult:
        if not self.is_configured:
            # Dev mode: log the delivery instead of sending
            logger.info(
                "sms_dev_mode",
                phone_masked=mask_phone(phone),
                template_id=template_id,
                otp=code if self.settings.log_codes else "*" * len(code),
            )
            return DeliveryResult(delivered=True, message_id="dev")

        headers = {"Accept": "application/json"}
        if self.settings.api_key:
            headers["Authorization"] = f"Bearer {self.settings.api_key}"
        payload = {
            "phone": phone,
            "sign_name": self.settings.sign_name,
            "template_id": template_id,
            "params": {"code": code},
        }
        timeout = httpx.Timeout(self.settings.timeout_seconds)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(self.settings.gateway_url, json=payload, headers=headers)
                response.raise_for_status()
                try:
                    body = response.json()
                except ValueError:
                    body = {}
        except httpx.HTTPStatusError as exc:
            logger.error(
                "sms_gateway_rejected",
                phone_masked=mask_phone(phone),
                status_code=exc.response.status_code,
            )
            return DeliveryResult(delivered=False, error=f"status {exc.response.status_code}")
        except httpx.TimeoutException:
            logger.error("sms_gateway_timeout", phone_masked=mask_phone(phone))
            return DeliveryResult(delivered=False, error="timeout")
        except httpx.HTTPError as exc:
            logger.error("sms_gateway_unreachable", phone_masked=mask_phone(phone), error=str(exc))
            return DeliveryResult(delivered=False, error="unreachable")

        message_id = body.get("message_id") if isinstance(body, dict) else None
        logger.info("sms_sent", phone_masked=mask_phone(phone), template_id=template_id)
        return DeliveryResult(delivered=True, message_id=message_id)


async def deliver_with_retry(
    channel: SmsDeliveryChannel,
    phone: str,
    template_id: str,
    code: str,
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 0.5,
) -> DeliveryResult:
    """Send with exponential backoff; raise ServerError once attempts run out."""

    last: Optional[DeliveryResult] = None
    for attempt in range(max(1, max_attempts)):
        if attempt:
            await asyncio.sleep(backoff_seconds * 2 ** (attempt - 1))
        try:
            last = await channel.send(phone, template_id, code)
        except Exception as exc:
            logger.warning(
                "sms_delivery_exception",
                phone_masked=mask_phone(phone),
                attempt=attempt + 1,
                error=str(exc),
            )
            last = DeliveryResult(delivered=False, error=str(exc))
        if last.delivered:
            return last
    logger.error(
        "sms_delivery_failed",
        phone_masked=mask_phone(phone),
        attempts=max_attempts,
        error=last.error if last else None,
    )
    raise ServerError("verification code delivery failed")
