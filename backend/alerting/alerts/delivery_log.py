"""
delivery_log.py — Append-only record of every channel attempt.

Rows are keyed by (alert_id, recipient_id, channel, attempt_no). A retry
of the same channel for the same recipient gets the next attempt_no; no
row is ever updated or removed (except by retention cleanup of the whole
alert).

Derived views:
    latest_attempts()       last row per (recipient, channel)
    failed_recipient_ids()  the retry subset
    compute_stats()         per-status / per-channel counts
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Tuple

from backend.alerting.alerts.models import (
    FAILURE_STATUSES,
    SUCCESS_STATUSES,
    AttemptStatus,
    Channel,
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryStats,
)
from backend.alerting.alerts.store import AlertStore
from backend.alerting.core.database import with_retry


AttemptKey = Tuple[str, Channel]


def _latest_by_key(attempts: List[DeliveryAttempt]) -> Dict[AttemptKey, DeliveryAttempt]:
    latest: Dict[AttemptKey, DeliveryAttempt] = {}
    for attempt in attempts:
        key = (attempt.recipient_id, attempt.channel)
        current = latest.get(key)
        if current is None or attempt.attempt_no > current.attempt_no:
            latest[key] = attempt
    return latest


class DeliveryLog:
    def __init__(self, store: AlertStore):
        self.store = store

    async def append(
        self,
        alert_id: str,
        recipient_id: str,
        channel: Channel,
        outcome: DeliveryOutcome,
    ) -> DeliveryAttempt:
        """Record one adapter outcome as SENT or FAILED."""
        now = datetime.now(timezone.utc)
        if outcome.success:
            attempt = DeliveryAttempt(
                alert_id=alert_id,
                recipient_id=recipient_id,
                channel=channel,
                status=AttemptStatus.SENT,
                message_ref=outcome.message_ref,
                sent_at=now,
                delivered_at=now,
                created_at=now,
            )
        else:
            attempt = DeliveryAttempt(
                alert_id=alert_id,
                recipient_id=recipient_id,
                channel=channel,
                status=AttemptStatus.FAILED,
                error_message=outcome.error,
                created_at=now,
            )
        return await with_retry(
            lambda: self.store.append_attempt(attempt), "Append delivery attempt",
        )

    async def attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        return await with_retry(
            lambda: self.store.list_attempts(alert_id), "List delivery attempts",
        )

    async def latest_attempts(self, alert_id: str) -> Dict[AttemptKey, DeliveryAttempt]:
        return _latest_by_key(await self.attempts(alert_id))

    async def failed_recipient_ids(self, alert_id: str) -> List[str]:
        """
        Recipients to retry: a failed latest attempt on some channel and no
        successful attempt on any channel.
        """
        all_attempts = await self.attempts(alert_id)
        reached = {a.recipient_id for a in all_attempts if a.status in SUCCESS_STATUSES}

        failed = []
        for (recipient_id, _), attempt in _latest_by_key(all_attempts).items():
            if attempt.status in FAILURE_STATUSES and recipient_id not in reached:
                failed.append(recipient_id)
        return list(dict.fromkeys(failed))

    async def compute_stats(self, alert_id: str) -> DeliveryStats:
        stats = DeliveryStats()
        for attempt in await self.attempts(alert_id):
            stats.total += 1
            channel_stats = stats.by_channel[attempt.channel]
            if attempt.status in SUCCESS_STATUSES:
                stats.delivered += 1
                channel_stats.sent += 1
            elif attempt.status in FAILURE_STATUSES:
                stats.failed += 1
                channel_stats.failed += 1
            else:
                stats.pending += 1
                channel_stats.pending += 1
        return stats
