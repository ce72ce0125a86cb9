"""
channels — Per-channel delivery backends.

Each channel module exposes:
    async send(recipient, payload) → DeliveryOutcome
    async check_health()           → bool

Channels are stateless coroutines, safe to run concurrently across
recipients. Fallback policy and logging live in the dispatcher.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict

from backend.alerting.alerts.channels import email_alert, sms_gateway, web_push
from backend.alerting.alerts.models import (
    AlertPayload,
    Channel,
    DeliveryOutcome,
    Recipient,
)

ChannelSender = Callable[[Recipient, AlertPayload], Awaitable[DeliveryOutcome]]

# Maps each channel to its send coroutine
DEFAULT_SENDERS: Dict[Channel, ChannelSender] = {
    Channel.EMAIL: email_alert.send,
    Channel.SMS:   sms_gateway.send,
    Channel.PUSH:  web_push.send,
}

HEALTH_CHECKS: Dict[Channel, Callable[[], Awaitable[bool]]] = {
    Channel.EMAIL: email_alert.check_health,
    Channel.SMS:   sms_gateway.check_health,
    Channel.PUSH:  web_push.check_health,
}

__all__ = [
    "ChannelSender", "DEFAULT_SENDERS", "HEALTH_CHECKS",
    "email_alert", "sms_gateway", "web_push",
]
