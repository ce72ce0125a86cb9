"""
sms_gateway.py — SMS delivery channel via gateway integration.

Delivery mechanism:
    • "simulation" — log and report success
    • "http"       — JSON POST to settings.SMS_API_URL with a bearer key

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    App  →  HTTP POST  →  SMS Gateway API  →  Carrier  →  Handset

    Body: {"to": "+1876...", "message": "...", "reference": "<alert id>"}
    A 2xx response with an optional "id" field counts as accepted.

A recipient who opted into SMS but has no phone number gets an immediate
failure outcome. That failure is deterministic: it is logged like any
other attempt and never retried by the transport.

    SMS (≤160 chars):
        "[HIGH] {title}: {message}"   (truncated with "...")
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import httpx

from backend.alerting.alerts.models import (
    AlertPayload,
    Channel,
    DeliveryOutcome,
    Recipient,
)
from backend.alerting.core.config import settings
from backend.alerting.core.errors import ChannelDeliveryError

logger = logging.getLogger(__name__)

SMS_MAX_CHARS = 160
NO_PHONE_REASON = "No phone number provided"


def _format_sms(payload: AlertPayload) -> str:
    """Single-segment SMS body (GSM 7-bit limit)."""
    body = f"[{payload.severity.name}] {payload.title}: {payload.message}"
    if len(body) > SMS_MAX_CHARS:
        body = body[: SMS_MAX_CHARS - 3].rstrip() + "..."
    return body


async def _post_to_gateway(
    phone: str,
    body: str,
    reference: str,
    timeout_seconds: float,
) -> Optional[str]:
    if not settings.SMS_API_URL:
        raise ChannelDeliveryError(Channel.SMS.value, "SMS_API_URL is not configured")

    headers = {}
    if settings.SMS_API_KEY:
        headers["Authorization"] = f"Bearer {settings.SMS_API_KEY}"

    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        response = await client.post(
            settings.SMS_API_URL,
            json={"to": phone, "message": body, "reference": reference},
            headers=headers,
        )
    if response.status_code >= 400:
        raise ChannelDeliveryError(
            Channel.SMS.value,
            f"gateway returned HTTP {response.status_code}",
            status_code=response.status_code,
        )
    try:
        return response.json().get("id")
    except ValueError:
        return None


async def send(
    recipient: Recipient,
    payload: AlertPayload,
    *,
    provider: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryOutcome:
    """
    Send an SMS alert to a recipient.

    Parameters
    ----------
    recipient : Recipient
        Should have ``phone`` set; otherwise the outcome is a failure.
    payload : AlertPayload
    provider : str, optional
        "simulation" or "http" (default ``settings.SMS_PROVIDER``).
    timeout_seconds : float, optional

    Returns
    -------
    DeliveryOutcome
    """
    if not recipient.phone:
        return DeliveryOutcome.failed(NO_PHONE_REASON)

    provider = provider or settings.SMS_PROVIDER
    timeout_seconds = timeout_seconds or settings.CHANNEL_TIMEOUT_SECONDS
    body = _format_sms(payload)
    message_ref = f"{Channel.SMS.value}-{payload.alert_id}-{recipient.id}-{int(time.time() * 1000)}"

    try:
        if provider == "simulation":
            logger.info(
                "[SMS] Alert %s → %s (%d chars)",
                payload.alert_id, recipient.phone, len(body),
            )
        elif provider == "http":
            gateway_id = await _post_to_gateway(
                recipient.phone, body, payload.alert_id, timeout_seconds,
            )
            message_ref = gateway_id or message_ref
        else:
            return DeliveryOutcome.failed(f"Unknown SMS provider: {provider}")

    except Exception as exc:
        logger.error("[SMS] Failed for %s: %s", recipient.id, exc)
        reason = exc.reason if isinstance(exc, ChannelDeliveryError) else str(exc)
        return DeliveryOutcome.failed(reason or type(exc).__name__)

    return DeliveryOutcome.ok(message_ref)


async def check_health() -> bool:
    if settings.SMS_PROVIDER == "simulation":
        return True
    return bool(settings.SMS_API_URL)
