"""
test_sql_store.py — SQLAlchemy store tests on a throwaway SQLite database.

Covers:
    • Row ↔ model mapping (enums, JSON regions, UTC datetimes)
    • Transaction commit and rollback
    • Eligibility query ordering and region counts
    • Attempt numbering and the unique attempt key
    • A full dispatch → retry campaign on the SQL store

Run with:
    pytest tests/test_sql_store.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from backend.alerting.alerts.alert_service import AlertService
from backend.alerting.alerts.delivery_log import DeliveryLog
from backend.alerting.alerts.dispatcher import NotificationDispatcher
from backend.alerting.alerts.models import (
    Alert,
    AlertDeliveryStatus,
    AlertType,
    AttemptStatus,
    Channel,
    DeliveryAttempt,
    DispatchRequest,
    Recipient,
    Region,
    Severity,
)
from backend.alerting.alerts.sql_store import SqlAlchemyAlertStore
from backend.alerting.core.database import init_db, with_transaction
from backend.alerting.core.errors import NotFoundError

BASE_TIME = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/alerts.db")
    await init_db(engine)
    yield SqlAlchemyAlertStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


def _make_recipient(rid: str, region: Region = Region.WESTMORELAND, minutes: int = 0, **kw) -> Recipient:
    return Recipient(
        id=rid,
        name=rid,
        email=f"{rid.lower()}@example.com",
        region=region,
        phone="+18765550123",
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kw,
    )


def _make_alert(**overrides) -> Alert:
    fields = dict(
        type=AlertType.EMERGENCY,
        severity=Severity.HIGH,
        title="Evacuation Order",
        message="Evacuate coastal communities immediately.",
        regions=[Region.WESTMORELAND, Region.HANOVER],
        created_at=BASE_TIME,
    )
    fields.update(overrides)
    return Alert(**fields)


class TestAlertMapping:

    @pytest.mark.asyncio
    async def test_round_trip(self, sql_store):
        alert = _make_alert(expires_at=BASE_TIME + timedelta(days=1), created_by="ops-1")
        await sql_store.insert_alert(alert)

        fetched = await sql_store.get_alert(alert.id)

        assert fetched.severity is Severity.HIGH
        assert fetched.type is AlertType.EMERGENCY
        assert fetched.regions == [Region.WESTMORELAND, Region.HANOVER]
        assert fetched.created_at == BASE_TIME
        assert fetched.expires_at.tzinfo is not None
        assert fetched.delivery_status is AlertDeliveryStatus.PENDING

    @pytest.mark.asyncio
    async def test_update(self, sql_store):
        alert = await sql_store.insert_alert(_make_alert())
        updated = await sql_store.update_alert(
            alert.id, delivery_status=AlertDeliveryStatus.FAILED, failed_count=2,
        )
        assert updated.delivery_status is AlertDeliveryStatus.FAILED
        assert (await sql_store.get_alert(alert.id)).failed_count == 2

    @pytest.mark.asyncio
    async def test_update_missing(self, sql_store):
        with pytest.raises(NotFoundError):
            await sql_store.update_alert("missing", failed_count=1)

    @pytest.mark.asyncio
    async def test_list_window(self, sql_store):
        for day in range(3):
            await sql_store.insert_alert(_make_alert(id=f"A{day}", created_at=BASE_TIME + timedelta(days=day)))
        alerts = await sql_store.list_alerts(created_to=BASE_TIME + timedelta(days=1))
        assert [a.id for a in alerts] == ["A1", "A0"]

    @pytest.mark.asyncio
    async def test_list_pages_and_filters_in_query(self, sql_store):
        now = BASE_TIME + timedelta(days=10)
        for i, (severity, regions, expires) in enumerate([
            (Severity.LOW, [Region.WESTMORELAND], None),
            (Severity.HIGH, [Region.WESTMORELAND, Region.HANOVER], None),
            (Severity.HIGH, [Region.WESTMORELAND], now - timedelta(hours=1)),
            (Severity.MEDIUM, [Region.HANOVER], now + timedelta(days=1)),
        ]):
            await sql_store.insert_alert(_make_alert(
                id=f"A{i}", severity=severity, regions=regions, expires_at=expires,
                created_at=BASE_TIME + timedelta(days=i),
            ))

        assert [a.id for a in await sql_store.list_alerts(limit=2, offset=1)] == ["A2", "A1"]
        hanover = await sql_store.list_alerts(regions=[Region.HANOVER])
        assert [a.id for a in hanover] == ["A3", "A1"]
        active = await sql_store.list_alerts(active_at=now, most_severe_first=True)
        assert [a.id for a in active] == ["A1", "A3", "A0"]
        assert await sql_store.count_alerts() == 4
        assert await sql_store.count_alerts(regions=[Region.HANOVER, Region.WESTMORELAND]) == 1
        assert await sql_store.count_alerts(active_at=now) == 3

    @pytest.mark.asyncio
    async def test_emergency_only_round_trip(self, sql_store):
        alert = await sql_store.insert_alert(_make_alert(emergency_only=True))
        assert (await sql_store.get_alert(alert.id)).emergency_only is True


class TestTransactions:

    @pytest.mark.asyncio
    async def test_rollback(self, sql_store):
        async def _fail(tx):
            await tx.insert_alert(_make_alert(id="doomed"))
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await with_transaction(sql_store, _fail, "Failing insert")
        assert await sql_store.get_alert("doomed") is None

    @pytest.mark.asyncio
    async def test_commit(self, sql_store):
        async def _create(tx):
            alert = await tx.insert_alert(_make_alert(id="kept"))
            return await tx.update_alert(alert.id, recipient_count=4)

        await with_transaction(sql_store, _create, "Create")
        assert (await sql_store.get_alert("kept")).recipient_count == 4


class TestRecipientsAndAttempts:

    @pytest.mark.asyncio
    async def test_eligible_order_and_counts(self, sql_store):
        for r in [
            _make_recipient("W2", minutes=5),
            _make_recipient("H1", Region.HANOVER, minutes=9),
            _make_recipient("W1", minutes=1),
            _make_recipient("W3", is_active=False),
            _make_recipient("W4", email_enabled=False),
        ]:
            await sql_store.insert_recipient(r)

        found = await sql_store.find_eligible_recipients([Region.WESTMORELAND, Region.HANOVER])
        assert [r.id for r in found] == ["H1", "W1", "W2"]
        assert await sql_store.count_recipients_by_region() == {
            Region.WESTMORELAND: 2, Region.HANOVER: 1,
        }

    @pytest.mark.asyncio
    async def test_attempt_numbering(self, sql_store):
        alert = await sql_store.insert_alert(_make_alert())
        await sql_store.insert_recipient(_make_recipient("W1"))

        first = await sql_store.append_attempt(
            DeliveryAttempt(alert.id, "W1", Channel.SMS, AttemptStatus.FAILED, error_message="x"),
        )
        second = await sql_store.append_attempt(
            DeliveryAttempt(alert.id, "W1", Channel.SMS, AttemptStatus.SENT),
        )

        assert (first.attempt_no, second.attempt_no) == (1, 2)
        rows = await sql_store.list_attempts(alert.id)
        assert [r.status for r in rows] == [AttemptStatus.FAILED, AttemptStatus.SENT]

    @pytest.mark.asyncio
    async def test_delete_removes_log_rows(self, sql_store):
        alert = await sql_store.insert_alert(_make_alert(expires_at=BASE_TIME + timedelta(hours=1)))
        await sql_store.insert_recipient(_make_recipient("W1"))
        await sql_store.append_attempt(DeliveryAttempt(alert.id, "W1", Channel.EMAIL, AttemptStatus.SENT))

        removed = await sql_store.delete_alerts(
            expired_before=BASE_TIME + timedelta(days=40),
            created_before=BASE_TIME + timedelta(days=10),
        )

        assert removed == 1
        assert await sql_store.list_attempts(alert.id) == []

    @pytest.mark.asyncio
    async def test_ping(self, sql_store):
        assert await sql_store.ping() is True


class TestCampaignOnSql:

    @pytest.mark.asyncio
    async def test_dispatch_then_retry(self, sql_store, senders, fake_sleep):
        for rid in ("W1", "W2"):
            await sql_store.insert_recipient(_make_recipient(rid))
        dispatcher = NotificationDispatcher(DeliveryLog(sql_store), senders.as_mapping(), sleep=fake_sleep)
        service = AlertService(sql_store, dispatcher=dispatcher)
        senders.fail(Channel.EMAIL, "W2")
        senders.fail(Channel.PUSH, "W2")

        result = await service.dispatch(DispatchRequest(
            type=AlertType.FLOOD,
            severity=Severity.MEDIUM,
            title="River Flooding",
            message="Cabarita River has burst its banks.",
            regions=[Region.WESTMORELAND],
        ))
        assert result.alert.delivery_status is AlertDeliveryStatus.FAILED
        assert (result.alert.delivered_count, result.alert.failed_count) == (1, 1)

        senders.recover(Channel.PUSH)
        retry = await service.retry_failed_deliveries(result.alert.id)

        assert retry.success_count == 1
        alert = (await service.get_alert(result.alert.id)).alert
        assert alert.delivery_status is AlertDeliveryStatus.COMPLETED
        assert (alert.delivered_count, alert.failed_count) == (2, 0)
        stats = await service.get_delivery_stats(alert.id)
        # W1 email; W2 email + push, then email + push again
        assert stats.total == 5
        assert stats.by_channel[Channel.EMAIL].failed == 2
