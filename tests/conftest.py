"""
Shared fixtures for the alert dispatch tests.

    store      — fresh InMemoryAlertStore
    senders    — scripted channel senders recording every call
    sleeps     — records inter-batch pauses instead of sleeping
    dispatcher — NotificationDispatcher wired to the three above
    service    — AlertService over the same store and dispatcher
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

import pytest

from backend.alerting.alerts.alert_service import AlertService
from backend.alerting.alerts.delivery_log import DeliveryLog
from backend.alerting.alerts.dispatcher import NotificationDispatcher
from backend.alerting.alerts.models import (
    AlertPayload,
    Channel,
    DeliveryOutcome,
    Recipient,
)
from backend.alerting.alerts.store import InMemoryAlertStore
from backend.alerting.core.config import settings


@pytest.fixture(autouse=True)
def _fast_settings(monkeypatch):
    """No real waiting in tests; channels stay in simulation mode."""
    monkeypatch.setattr(settings, "DB_RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "DISPATCH_BATCH_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "RETRY_BATCH_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "EMAIL_PROVIDER", "simulation")
    monkeypatch.setattr(settings, "SMS_PROVIDER", "simulation")
    monkeypatch.setattr(settings, "PUSH_PROVIDER", "simulation")


class ScriptedSenders:
    """
    Channel senders whose outcome is scripted per channel and recipient.

    Every call is recorded as (channel, recipient_id) in ``calls``.
    """

    def __init__(self):
        self.calls: List[Tuple[Channel, str]] = []
        # channel → recipient ids that fail (None = every recipient)
        self._failing: Dict[Channel, Optional[Set[str]]] = {}
        self._raising: Set[str] = set()

    def fail(self, channel: Channel, *recipient_ids: str) -> None:
        self._failing[channel] = set(recipient_ids) or None

    def recover(self, channel: Channel) -> None:
        self._failing.pop(channel, None)

    def explode_for(self, *recipient_ids: str) -> None:
        self._raising.update(recipient_ids)

    def calls_for(self, recipient_id: str) -> List[Channel]:
        return [ch for ch, rid in self.calls if rid == recipient_id]

    def as_mapping(self):
        return {channel: self._sender(channel) for channel in Channel}

    def _sender(self, channel: Channel):
        async def send(recipient: Recipient, payload: AlertPayload) -> DeliveryOutcome:
            self.calls.append((channel, recipient.id))
            if recipient.id in self._raising:
                raise RuntimeError(f"{channel.value} transport exploded")
            if channel in self._failing:
                failing = self._failing[channel]
                if failing is None or recipient.id in failing:
                    return DeliveryOutcome.failed(f"{channel.value} unavailable")
            return DeliveryOutcome.ok(f"{channel.value}-{recipient.id}")

        return send


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def senders():
    return ScriptedSenders()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def delivery_log(store):
    return DeliveryLog(store)


@pytest.fixture
def dispatcher(delivery_log, senders, fake_sleep):
    return NotificationDispatcher(delivery_log, senders.as_mapping(), sleep=fake_sleep)


@pytest.fixture
def service(store, dispatcher):
    return AlertService(store, dispatcher=dispatcher)
