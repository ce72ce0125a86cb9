"""
web_push.py — Push notification channel.

Push is the last link of every recipient's fallback chain: it is always
attempted when earlier channels did not already reach a non-HIGH
recipient, and always attempted for HIGH alerts. A push failure never
downgrades a recipient who was already reached by email or SMS.

Delivery mechanism:
    • "simulation" — log and report success
    • "http"       — JSON POST to settings.PUSH_API_URL (notification hub)

Recipients without a push subscription token fail deterministically.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from backend.alerting.alerts.models import (
    AlertPayload,
    Channel,
    DeliveryOutcome,
    Recipient,
    Severity,
)
from backend.alerting.core.config import settings
from backend.alerting.core.errors import ChannelDeliveryError

logger = logging.getLogger(__name__)

NO_TOKEN_REASON = "No push subscription registered"


def build_push_data(payload: AlertPayload, recipient: Recipient) -> Dict[str, Any]:
    return {
        "token": recipient.push_token,
        "notification": {
            "title": payload.title,
            "body": payload.message,
            "badge": 1,
            "sound": "emergency" if payload.severity == Severity.HIGH else "default",
            "requireInteraction": payload.severity == Severity.HIGH,
        },
        "data": {
            "alert_id": payload.alert_id,
            "type": payload.type.value,
            "severity": payload.severity.name,
            "regions": [r.value for r in payload.regions],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


async def send(
    recipient: Recipient,
    payload: AlertPayload,
    *,
    provider: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryOutcome:
    """Send a push notification to a recipient."""
    if not recipient.push_token:
        return DeliveryOutcome.failed(NO_TOKEN_REASON)

    provider = provider or settings.PUSH_PROVIDER
    timeout_seconds = timeout_seconds or settings.CHANNEL_TIMEOUT_SECONDS
    push_data = build_push_data(payload, recipient)
    message_ref = f"{Channel.PUSH.value}-{payload.alert_id}-{recipient.id}-{int(time.time() * 1000)}"

    try:
        if provider == "simulation":
            logger.info(
                "[PUSH] Alert %s → %s: %s",
                payload.alert_id, recipient.id, payload.title,
            )
        elif provider == "http":
            if not settings.PUSH_API_URL:
                raise ChannelDeliveryError(Channel.PUSH.value, "PUSH_API_URL is not configured")
            headers = {}
            if settings.PUSH_API_KEY:
                headers["Authorization"] = f"Bearer {settings.PUSH_API_KEY}"
            async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                response = await client.post(
                    settings.PUSH_API_URL, json=push_data, headers=headers,
                )
            if response.status_code >= 400:
                raise ChannelDeliveryError(
                    Channel.PUSH.value,
                    f"push service returned HTTP {response.status_code}",
                )
        else:
            return DeliveryOutcome.failed(f"Unknown push provider: {provider}")

    except Exception as exc:
        logger.error("[PUSH] Failed for %s: %s", recipient.id, exc)
        reason = exc.reason if isinstance(exc, ChannelDeliveryError) else str(exc)
        return DeliveryOutcome.failed(reason or type(exc).__name__)

    return DeliveryOutcome.ok(message_ref)


async def check_health() -> bool:
    if settings.PUSH_PROVIDER == "simulation":
        return True
    return bool(settings.PUSH_API_URL)
