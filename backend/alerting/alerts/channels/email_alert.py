"""
email_alert.py — Email alert delivery channel (primary channel).

Delivery mechanism:
    • "simulation" — log and report success (development / tests)
    • "smtp"       — standard-library SMTP client, run in a worker thread
                     so the event loop keeps serving other recipients

Email is the first channel tried for every recipient who opted in. For
non-HIGH alerts a successful email ends the recipient's fallback chain.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import time
from email.message import EmailMessage
from typing import Optional

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

_SEVERITY_TAGS = {
    Severity.LOW:    "ADVISORY",
    Severity.MEDIUM: "WARNING",
    Severity.HIGH:   "EMERGENCY",
}


def _build_subject(payload: AlertPayload) -> str:
    tag = _SEVERITY_TAGS.get(payload.severity, "ALERT")
    return f"[{tag}] {payload.title}"


def _build_plain_body(payload: AlertPayload) -> str:
    regions = ", ".join(r.value.replace("_", " ").title() for r in payload.regions)
    return (
        f"{payload.title}\n\n"
        f"{payload.message}\n\n"
        f"Type: {payload.type.value}\n"
        f"Severity: {payload.severity.name}\n"
        f"Affected areas: {regions}\n"
        f"Reference: {payload.alert_id}\n"
    )


def _message_ref(payload: AlertPayload, recipient: Recipient) -> str:
    return f"{Channel.EMAIL.value}-{payload.alert_id}-{recipient.id}-{int(time.time() * 1000)}"


def _smtp_send(message: EmailMessage, timeout_seconds: float) -> None:
    if not settings.SMTP_HOST:
        raise ChannelDeliveryError(Channel.EMAIL.value, "SMTP_HOST is not configured")
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=timeout_seconds) as server:
        server.starttls()
        if settings.SMTP_USER and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        server.send_message(message)


async def send(
    recipient: Recipient,
    payload: AlertPayload,
    *,
    provider: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
) -> DeliveryOutcome:
    """
    Send an email alert to a recipient.

    Parameters
    ----------
    recipient : Recipient
        Must have ``email`` set.
    payload : AlertPayload
    provider : str, optional
        "simulation" or "smtp" (default ``settings.EMAIL_PROVIDER``).
    timeout_seconds : float, optional

    Returns
    -------
    DeliveryOutcome
    """
    provider = provider or settings.EMAIL_PROVIDER
    timeout_seconds = timeout_seconds or settings.CHANNEL_TIMEOUT_SECONDS

    if not recipient.email:
        return DeliveryOutcome.failed("No email address provided")

    subject = _build_subject(payload)

    try:
        if provider == "simulation":
            logger.info(
                "[EMAIL] Alert %s → %s: Subject='%s'",
                payload.alert_id, recipient.email, subject,
            )
        elif provider == "smtp":
            message = EmailMessage()
            message["Subject"] = subject
            message["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
            message["To"] = recipient.email
            message.set_content(_build_plain_body(payload))
            await asyncio.to_thread(_smtp_send, message, timeout_seconds)
        else:
            return DeliveryOutcome.failed(f"Unknown email provider: {provider}")

    except Exception as exc:
        logger.error("[EMAIL] Failed for %s: %s", recipient.id, exc)
        reason = exc.reason if isinstance(exc, ChannelDeliveryError) else str(exc)
        return DeliveryOutcome.failed(reason or type(exc).__name__)

    return DeliveryOutcome.ok(_message_ref(payload, recipient))


async def check_health() -> bool:
    """True when the configured provider can be used."""
    if settings.EMAIL_PROVIDER == "simulation":
        return True
    return bool(settings.SMTP_HOST)
