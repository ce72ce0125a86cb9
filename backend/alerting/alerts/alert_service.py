"""
alert_service.py — Alert campaign orchestration.

This is the central coordinator that:
    1. Validates a dispatch request before anything is written
    2. Creates the alert and resolves its recipients in one transaction
    3. Hands the recipients to the dispatcher (no transaction held)
    4. Finalizes the alert counters and status in a second transaction
    5. Re-sends to failed recipients on demand
    6. Serves read models: status, history, active alerts, analytics

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  0. Validate        │  every field error at once → ValidationError
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1–2. Transaction   │  insert Alert (PENDING)
    │                     │  resolve recipients, recipient_count, SENDING
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Fan-out         │  NotificationDispatcher.send_batch
    │                     │  raises → DispatchFatalError, alert stays SENDING
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Transaction     │  delivered / failed counters
    │                     │  COMPLETED if failed == 0 else FAILED
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RETRY ACCOUNTING
═══════════════════════════════════════════════════════════════════════════

    allowed on     COMPLETED or FAILED alerts only
    retry subset   recipients with a failed latest attempt and no success,
                   plus counted failures that left no log row
    delivered     += new successes
    failed         = max(0, failed - new successes)
    recipient_count never changes

Only one dispatch or retry may run per alert at a time within a process;
a second retry while one is running raises DispatchConflictError.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from backend.alerting.alerts.delivery_log import DeliveryLog
from backend.alerting.alerts.dispatcher import NotificationDispatcher
from backend.alerting.alerts.models import (
    SUCCESS_STATUSES,
    Alert,
    AlertDeliveryStatus,
    AlertType,
    AlertWithStats,
    BatchResult,
    DeliveryStats,
    DispatchRequest,
    DispatchResult,
    Recipient,
    Region,
    Severity,
)
from backend.alerting.alerts.recipients import RecipientResolver
from backend.alerting.alerts.store import AlertStore
from backend.alerting.alerts.validation import validate_dispatch_request
from backend.alerting.core.config import settings
from backend.alerting.core.database import with_retry, with_transaction
from backend.alerting.core.errors import (
    DispatchConflictError,
    DispatchFatalError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


def _final_status(failed_count: int) -> AlertDeliveryStatus:
    return AlertDeliveryStatus.COMPLETED if failed_count == 0 else AlertDeliveryStatus.FAILED


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class AlertService:
    """
    Orchestrates alert campaigns over an ``AlertStore``.

    Parameters
    ----------
    store : AlertStore
    dispatcher : NotificationDispatcher, optional
        Built over a ``DeliveryLog`` on ``store`` when omitted.
    resolver : RecipientResolver, optional
    """

    def __init__(
        self,
        store: AlertStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        resolver: Optional[RecipientResolver] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher or NotificationDispatcher(DeliveryLog(store))
        self.delivery_log = self.dispatcher.delivery_log
        self.resolver = resolver or RecipientResolver(store)
        self._locks: Dict[str, asyncio.Lock] = {}

    # ─────────────────────────────────────────────────────────────────────
    # Campaigns
    # ─────────────────────────────────────────────────────────────────────

    async def dispatch(
        self,
        request: DispatchRequest,
        actor_id: Optional[str] = None,
    ) -> DispatchResult:
        """
        Create an alert and deliver it to every eligible recipient.

        Returns normally whenever the campaign ran, including when some or
        all recipients could not be reached.

        Raises
        ------
        ValidationError
            Request rejected; nothing was written.
        StoreError / StoreUnavailableError
            Persisting the alert or its outcome failed.
        DispatchFatalError
            The fan-out itself raised; the alert remains SENDING.
        """
        request = validate_dispatch_request(request)

        async def _create(tx: AlertStore) -> Tuple[Alert, List[Recipient]]:
            alert = await tx.insert_alert(Alert(
                type=request.type,
                severity=request.severity,
                title=request.title,
                message=request.message,
                regions=list(request.regions),
                created_by=actor_id,
                expires_at=request.expires_at,
                emergency_only=request.emergency_only,
            ))
            recipients = await self.resolver.resolve(
                request.regions, request.emergency_only, store=tx,
            )
            alert = await tx.update_alert(
                alert.id,
                recipient_count=len(recipients),
                delivery_status=AlertDeliveryStatus.SENDING,
            )
            return alert, recipients

        alert, recipients = await with_transaction(self.store, _create, "Create alert")
        logger.info(
            "Alert %s [%s/%s] created by %s for %s",
            alert.id, alert.type.value, alert.severity.name, actor_id or "system",
            ", ".join(r.value for r in alert.regions),
            extra={"alert_id": alert.id, "recipient_count": alert.recipient_count},
        )

        async with self._exclusive(alert.id):
            batch = await self._run_fan_out(alert, recipients)
            alert = await self._finalize(alert.id, batch.success_count, batch.failure_count)

        return DispatchResult(alert=alert, dispatch_result=batch)

    async def retry_failed_deliveries(self, alert_id: str) -> BatchResult:
        """
        Re-send to recipients that have not been reached on any channel.

        Recipients already reached are never contacted again. With nothing
        to retry the alert is left untouched and an empty result returned.

        Raises
        ------
        NotFoundError
            Unknown alert.
        DispatchConflictError
            Another dispatch or retry holds the alert, or the alert has not
            been finalized (PENDING, or SENDING after an aborted fan-out).
        """
        async with self._exclusive(alert_id):
            alert = await self._require_alert(alert_id)
            if not alert.is_finalized:
                raise DispatchConflictError(
                    alert_id,
                    f"is {alert.delivery_status.value}; only completed or failed alerts can be retried",
                )
            failed_ids = await self.delivery_log.failed_recipient_ids(alert_id)
            if len(failed_ids) < alert.failed_count:
                failed_ids = failed_ids + await self._unlogged_recipient_ids(alert, failed_ids)
            if not failed_ids:
                logger.info("Alert %s has no failed deliveries to retry", alert_id)
                return BatchResult.empty()

            recipients = await with_retry(
                lambda: self.store.get_recipients(failed_ids), "Load retry recipients",
            )
            await with_transaction(
                self.store,
                lambda tx: tx.update_alert(alert_id, delivery_status=AlertDeliveryStatus.SENDING),
                "Mark alert sending",
            )
            logger.info(
                "Retrying alert %s for %d recipient(s)", alert_id, len(recipients),
                extra={"alert_id": alert_id, "recipient_count": len(recipients)},
            )

            batch = await self._run_fan_out(
                alert,
                recipients,
                batch_size=settings.RETRY_BATCH_SIZE,
                inter_batch_delay=settings.RETRY_BATCH_DELAY_SECONDS,
            )
            new_successes = batch.success_count
            await self._finalize(
                alert_id,
                alert.delivered_count + new_successes,
                max(0, alert.failed_count - new_successes),
            )
            return batch

    async def get_delivery_stats(self, alert_id: str) -> DeliveryStats:
        return await self.delivery_log.compute_stats(alert_id)

    async def create_alert(
        self,
        request: DispatchRequest,
        actor_id: Optional[str] = None,
    ) -> Alert:
        """Validate and store an alert without sending it (stays PENDING)."""
        request = validate_dispatch_request(request)
        alert = Alert(
            type=request.type,
            severity=request.severity,
            title=request.title,
            message=request.message,
            regions=list(request.regions),
            created_by=actor_id,
            expires_at=request.expires_at,
            emergency_only=request.emergency_only,
        )
        return await with_transaction(
            self.store, lambda tx: tx.insert_alert(alert), "Create alert",
        )

    # ─────────────────────────────────────────────────────────────────────
    # Read models
    # ─────────────────────────────────────────────────────────────────────

    async def get_alert(self, alert_id: str) -> AlertWithStats:
        alert = await self._require_alert(alert_id)
        return AlertWithStats(alert, await self.get_delivery_stats(alert_id))

    async def get_recent_alerts(
        self,
        limit: int = 10,
        offset: int = 0,
        regions: Optional[Sequence[Region]] = None,
    ) -> Tuple[List[AlertWithStats], int]:
        """Newest alerts first, plus the total matching count."""
        page = await with_retry(
            lambda: self.store.list_alerts(regions=regions, limit=limit, offset=offset),
            "Get recent alerts",
        )
        total = await with_retry(
            lambda: self.store.count_alerts(regions=regions), "Count recent alerts",
        )
        return [await self._with_stats(a) for a in page], total

    async def get_active_alerts(
        self,
        regions: Optional[Sequence[Region]] = None,
    ) -> List[AlertWithStats]:
        """Unexpired alerts, most severe first, then newest."""
        now = datetime.now(timezone.utc)
        alerts = await with_retry(
            lambda: self.store.list_alerts(
                regions=regions, active_at=now, most_severe_first=True,
            ),
            "Get active alerts",
        )
        return [await self._with_stats(a) for a in alerts]

    async def get_recipient_count_by_region(self) -> Dict[Region, int]:
        counts = await with_retry(
            self.store.count_recipients_by_region, "Count recipients by region",
        )
        return {region: counts.get(region, 0) for region in Region}

    async def get_alert_analytics(
        self,
        start: datetime,
        end: datetime,
        regions: Optional[Sequence[Region]] = None,
    ) -> Dict[str, Any]:
        """
        Campaign analytics for alerts created in [start, end].

        Region delivery rates come from the delivery log, attributing each
        attempt to the recipient's region.
        """
        alerts = await with_retry(
            lambda: self.store.list_alerts(created_from=start, created_to=end, regions=regions),
            "Get alert analytics",
        )

        by_type = {t.value: 0 for t in AlertType}
        by_severity = {s.name: 0 for s in Severity}
        by_region = {r.value: {"sent": 0, "delivered": 0, "rate": 0.0} for r in Region}
        total_recipients = 0
        total_delivered = 0

        for alert in alerts:
            by_type[alert.type.value] += 1
            by_severity[alert.severity.name] += 1
            total_recipients += alert.recipient_count
            total_delivered += alert.delivered_count

            attempts = await self.delivery_log.attempts(alert.id)
            recipients = await with_retry(
                lambda: self.store.get_recipients({a.recipient_id for a in attempts}),
                "Load analytics recipients",
            )
            region_of = {r.id: r.region for r in recipients}
            for attempt in attempts:
                region = region_of.get(attempt.recipient_id)
                if region is None:
                    continue
                bucket = by_region[region.value]
                bucket["sent"] += 1
                if attempt.status in SUCCESS_STATUSES:
                    bucket["delivered"] += 1

        for bucket in by_region.values():
            bucket["rate"] = _percent(bucket["delivered"], bucket["sent"])

        return {
            "total_alerts": len(alerts),
            "alerts_by_type": by_type,
            "alerts_by_severity": by_severity,
            "average_delivery_rate": _percent(total_delivered, total_recipients),
            "total_recipients": total_recipients,
            "total_delivered": total_delivered,
            "delivery_rate_by_region": by_region,
        }

    # ─────────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────────

    async def cleanup_expired_alerts(self) -> int:
        """Delete alerts that have expired and are past the retention window."""
        now = datetime.now(timezone.utc)
        removed = await with_transaction(
            self.store,
            lambda tx: tx.delete_alerts(
                expired_before=now,
                created_before=now - timedelta(days=settings.ALERT_RETENTION_DAYS),
            ),
            "Cleanup expired alerts",
        )
        logger.info("Removed %d expired alert(s)", removed)
        return removed

    async def health(self) -> Dict[str, Any]:
        try:
            database = await with_retry(self.store.ping, "Store health", max_retries=1)
        except Exception as exc:
            logger.error("Store health check failed: %s", exc)
            database = False
        return {
            "database": bool(database),
            "notifications": await self.dispatcher.health(),
        }

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _exclusive(self, alert_id: str) -> "_AlertLock":
        return _AlertLock(self._locks, alert_id)

    async def _require_alert(self, alert_id: str) -> Alert:
        alert = await with_retry(lambda: self.store.get_alert(alert_id), "Get alert")
        if alert is None:
            raise NotFoundError("Alert", id=alert_id)
        return alert

    async def _unlogged_recipient_ids(self, alert: Alert, logged_failures: List[str]) -> List[str]:
        """
        Failed recipients whose attempts never reached the delivery log.

        These are members of the alert's original audience (registered no
        later than the alert) with no log row of any kind.
        """
        logged = {a.recipient_id for a in await self.delivery_log.attempts(alert.id)}
        logged.update(logged_failures)
        audience = await self.resolver.resolve(alert.regions, alert.emergency_only)
        unlogged = [
            r.id for r in audience
            if r.id not in logged and r.created_at <= alert.created_at
        ]
        if unlogged:
            logger.warning(
                "Alert %s has %d failed recipient(s) without log rows",
                alert.id, len(unlogged),
                extra={"alert_id": alert.id, "recipient_count": len(unlogged)},
            )
        return unlogged

    async def _with_stats(self, alert: Alert) -> AlertWithStats:
        return AlertWithStats(alert, await self.get_delivery_stats(alert.id))

    async def _run_fan_out(
        self,
        alert: Alert,
        recipients: Sequence[Recipient],
        **batch_options: Any,
    ) -> BatchResult:
        try:
            return await self.dispatcher.send_batch(recipients, alert, **batch_options)
        except Exception as exc:
            logger.exception(
                "Fan-out for alert %s aborted; alert left in %s",
                alert.id, AlertDeliveryStatus.SENDING.value,
                extra={"alert_id": alert.id},
            )
            raise DispatchFatalError(alert.id, str(exc)) from exc

    async def _finalize(self, alert_id: str, delivered: int, failed: int) -> Alert:
        status = _final_status(failed)
        alert = await with_transaction(
            self.store,
            lambda tx: tx.update_alert(
                alert_id,
                delivered_count=delivered,
                failed_count=failed,
                delivery_status=status,
            ),
            "Finalize alert",
        )
        logger.info(
            "Alert %s finalized as %s (%d delivered, %d failed of %d)",
            alert_id, status.value, delivered, failed, alert.recipient_count,
            extra={"alert_id": alert_id, "recipient_count": alert.recipient_count},
        )
        return alert


class _AlertLock:
    """Non-blocking per-alert lock; a busy alert raises DispatchConflictError."""

    def __init__(self, locks: Dict[str, asyncio.Lock], alert_id: str):
        self._locks = locks
        self._alert_id = alert_id

    async def __aenter__(self) -> None:
        lock = self._locks.setdefault(self._alert_id, asyncio.Lock())
        if lock.locked():
            raise DispatchConflictError(self._alert_id)
        await lock.acquire()

    async def __aexit__(self, *exc_info) -> None:
        lock = self._locks.pop(self._alert_id, None)
        if lock is not None:
            lock.release()
