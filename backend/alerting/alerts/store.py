"""
store.py — Persistence interface for alerts, recipients and the delivery log.

The dispatch core only talks to ``AlertStore``. Two implementations:

    InMemoryAlertStore     dict-backed; tests, demos, single-process use
    SqlAlchemyAlertStore   async SQLAlchemy (see sql_store.py)

Transactions:
    ``async with store.transaction() as tx:`` yields a store whose writes
    are committed together on exit and rolled back if the block raises.
    Delivery-log appends are independent inserts keyed by
    (alert_id, recipient_id, channel, attempt_no) and are made outside any
    open transaction.
"""

from __future__ import annotations

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from backend.alerting.alerts.models import (
    Alert,
    Channel,
    DeliveryAttempt,
    Recipient,
    Region,
)
from backend.alerting.core.errors import NotFoundError, StoreError

# Fields of Alert that may change after insert
MUTABLE_ALERT_FIELDS = frozenset({
    "delivery_status", "recipient_count", "delivered_count", "failed_count",
})


class AlertStore(ABC):
    """Operations the dispatch core needs from the relational store."""

    # ── transactions ──

    @abstractmethod
    def transaction(self):
        """Async context manager yielding a transactional view of the store."""

    # ── alerts ──

    @abstractmethod
    async def insert_alert(self, alert: Alert) -> Alert: ...

    @abstractmethod
    async def get_alert(self, alert_id: str) -> Optional[Alert]: ...

    @abstractmethod
    async def update_alert(self, alert_id: str, **changes) -> Alert:
        """Apply ``changes`` (MUTABLE_ALERT_FIELDS only) and return the row."""

    @abstractmethod
    async def list_alerts(
        self,
        *,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        regions: Optional[Iterable[Region]] = None,
        active_at: Optional[datetime] = None,
        most_severe_first: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Alert]:
        """
        Alerts newest first.

        ``regions`` keeps alerts that target every listed region;
        ``active_at`` keeps alerts unexpired at that instant.
        ``most_severe_first`` orders by severity before recency.
        """

    @abstractmethod
    async def count_alerts(
        self,
        *,
        regions: Optional[Iterable[Region]] = None,
        active_at: Optional[datetime] = None,
    ) -> int:
        """Number of alerts ``list_alerts`` would return without paging."""

    @abstractmethod
    async def delete_alerts(self, *, expired_before: datetime, created_before: datetime) -> int:
        """Delete alerts expired before and created before the cut-offs."""

    # ── recipients ──

    @abstractmethod
    async def insert_recipient(self, recipient: Recipient) -> Recipient: ...

    @abstractmethod
    async def get_recipients(self, recipient_ids: Iterable[str]) -> List[Recipient]:
        """Recipients by id, ordered like ``find_eligible_recipients``."""

    @abstractmethod
    async def find_eligible_recipients(
        self,
        regions: Iterable[Region],
        *,
        active_only: bool = True,
        emergency_only: bool = False,
    ) -> List[Recipient]:
        """Opted-in recipients in ``regions`` ordered by region, created_at."""

    @abstractmethod
    async def count_recipients_by_region(self) -> Dict[Region, int]:
        """Active, opted-in recipients per region (absent regions omitted)."""

    # ── delivery log ──

    @abstractmethod
    async def append_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Insert a log row, assigning the next attempt_no for its key."""

    @abstractmethod
    async def list_attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        """Every row of one alert in insertion order."""

    # ── health ──

    @abstractmethod
    async def ping(self) -> bool: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-Memory Implementation
# ═══════════════════════════════════════════════════════════════════════════

def _copy_alert(alert: Alert) -> Alert:
    return dataclasses.replace(alert, regions=list(alert.regions))


def _matches(
    alert: Alert,
    regions: Optional[Iterable[Region]],
    active_at: Optional[datetime],
) -> bool:
    if regions and not set(regions) <= set(alert.regions):
        return False
    return active_at is None or not alert.is_expired(active_at)


class InMemoryAlertStore(AlertStore):
    """
    Dict-backed store.

    Transactions are serialized by a lock and roll back alert and recipient
    writes by restoring a snapshot. Delivery-log appends are never part of
    a transaction.
    """

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._recipients: Dict[str, Recipient] = {}
        self._attempts: List[DeliveryAttempt] = []
        self._attempt_keys: Dict[Tuple[str, str, Channel], int] = {}
        self._tx_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryAlertStore"]:
        async with self._tx_lock:
            alerts = {k: _copy_alert(v) for k, v in self._alerts.items()}
            recipients = dict(self._recipients)
            try:
                yield self
            except BaseException:
                self._alerts = alerts
                self._recipients = recipients
                raise

    # ── alerts ──

    async def insert_alert(self, alert: Alert) -> Alert:
        if alert.id in self._alerts:
            raise StoreError("Insert alert", f"duplicate alert id {alert.id}")
        self._alerts[alert.id] = _copy_alert(alert)
        return _copy_alert(alert)

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return _copy_alert(alert) if alert else None

    async def update_alert(self, alert_id: str, **changes) -> Alert:
        unknown = set(changes) - MUTABLE_ALERT_FIELDS
        if unknown:
            raise ValueError(f"Immutable alert fields: {sorted(unknown)}")
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        updated = dataclasses.replace(alert, **changes)
        self._alerts[alert_id] = updated
        return _copy_alert(updated)

    async def list_alerts(
        self,
        *,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        regions: Optional[Iterable[Region]] = None,
        active_at: Optional[datetime] = None,
        most_severe_first: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Alert]:
        regions = list(regions or [])
        alerts = [
            a for a in self._alerts.values()
            if (created_from is None or a.created_at >= created_from)
            and (created_to is None or a.created_at <= created_to)
            and _matches(a, regions, active_at)
        ]
        if most_severe_first:
            alerts.sort(key=lambda a: (a.severity, a.created_at), reverse=True)
        else:
            alerts.sort(key=lambda a: a.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [_copy_alert(a) for a in alerts[offset:end]]

    async def count_alerts(
        self,
        *,
        regions: Optional[Iterable[Region]] = None,
        active_at: Optional[datetime] = None,
    ) -> int:
        regions = list(regions or [])
        return sum(1 for a in self._alerts.values() if _matches(a, regions, active_at))

    async def delete_alerts(self, *, expired_before: datetime, created_before: datetime) -> int:
        doomed = [
            a.id for a in self._alerts.values()
            if a.expires_at is not None
            and a.expires_at < expired_before
            and a.created_at < created_before
        ]
        for alert_id in doomed:
            del self._alerts[alert_id]
        if doomed:
            gone = set(doomed)
            self._attempts = [a for a in self._attempts if a.alert_id not in gone]
            self._attempt_keys = {
                k: v for k, v in self._attempt_keys.items() if k[0] not in gone
            }
        return len(doomed)

    # ── recipients ──

    async def insert_recipient(self, recipient: Recipient) -> Recipient:
        if recipient.id in self._recipients:
            raise StoreError("Insert recipient", f"duplicate recipient id {recipient.id}")
        self._recipients[recipient.id] = recipient
        return recipient

    async def get_recipients(self, recipient_ids: Iterable[str]) -> List[Recipient]:
        found = [self._recipients[rid] for rid in set(recipient_ids) if rid in self._recipients]
        return sorted(found, key=Recipient.sort_key)

    async def find_eligible_recipients(
        self,
        regions: Iterable[Region],
        *,
        active_only: bool = True,
        emergency_only: bool = False,
    ) -> List[Recipient]:
        wanted = set(regions)
        matches = [
            r for r in self._recipients.values()
            if r.region in wanted
            and r.has_enabled_channel
            and (r.is_active or not active_only)
            and (r.emergency_only or not emergency_only)
        ]
        return sorted(matches, key=Recipient.sort_key)

    async def count_recipients_by_region(self) -> Dict[Region, int]:
        counts: Dict[Region, int] = {}
        for r in self._recipients.values():
            if r.is_active and r.has_enabled_channel:
                counts[r.region] = counts.get(r.region, 0) + 1
        return counts

    # ── delivery log ──

    async def append_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        key = (attempt.alert_id, attempt.recipient_id, attempt.channel)
        attempt_no = self._attempt_keys.get(key, 0) + 1
        self._attempt_keys[key] = attempt_no
        stored = dataclasses.replace(attempt, attempt_no=attempt_no)
        self._attempts.append(stored)
        return stored

    async def list_attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        return [a for a in self._attempts if a.alert_id == alert_id]

    async def ping(self) -> bool:
        return True
