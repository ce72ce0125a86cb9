"""
sql_store.py — Relational AlertStore on async SQLAlchemy.

Tables:
    alerts               one row per campaign, regions stored as a JSON list
    recipients           registered residents and their channel opt-ins
    alert_delivery_logs  append-only attempt log, unique on
                         (alert_id, recipient_id, channel, attempt_no)

Works on PostgreSQL (asyncpg) in production and SQLite (aiosqlite) in tests.
SQLite returns naive datetimes; rows are normalised to UTC on read.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Select,
    String,
    Text,
    UniqueConstraint,
    cast,
    delete,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.alerting.alerts.models import (
    Alert,
    AlertDeliveryStatus,
    AlertType,
    AttemptStatus,
    Channel,
    DeliveryAttempt,
    Recipient,
    Region,
    Severity,
)
from backend.alerting.alerts.store import MUTABLE_ALERT_FIELDS, AlertStore
from backend.alerting.core.database import Base
from backend.alerting.core.errors import NotFoundError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Tables
# ═══════════════════════════════════════════════════════════════════════════

class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(32))
    severity: Mapped[int] = mapped_column(Integer, index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    regions: Mapped[list] = mapped_column(JSON)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    emergency_only: Mapped[bool] = mapped_column(Boolean, default=False)
    delivery_status: Mapped[str] = mapped_column(String(16), default=AlertDeliveryStatus.PENDING.value)
    recipient_count: Mapped[int] = mapped_column(Integer, default=0)
    delivered_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)

    def to_model(self) -> Alert:
        return Alert(
            id=self.id,
            type=AlertType(self.type),
            severity=Severity(self.severity),
            title=self.title,
            message=self.message,
            regions=[Region(r) for r in self.regions],
            created_by=self.created_by,
            created_at=_as_utc(self.created_at),
            expires_at=_as_utc(self.expires_at),
            emergency_only=self.emergency_only,
            delivery_status=AlertDeliveryStatus(self.delivery_status),
            recipient_count=self.recipient_count,
            delivered_count=self.delivered_count,
            failed_count=self.failed_count,
        )

    @classmethod
    def from_model(cls, alert: Alert) -> "AlertRow":
        return cls(
            id=alert.id,
            type=alert.type.value,
            severity=int(alert.severity),
            title=alert.title,
            message=alert.message,
            regions=[r.value for r in alert.regions],
            created_by=alert.created_by,
            created_at=alert.created_at,
            expires_at=alert.expires_at,
            emergency_only=alert.emergency_only,
            delivery_status=alert.delivery_status.value,
            recipient_count=alert.recipient_count,
            delivered_count=alert.delivered_count,
            failed_count=alert.failed_count,
        )


class RecipientRow(Base):
    __tablename__ = "recipients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    email: Mapped[str] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    push_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    region: Mapped[str] = mapped_column(String(32), index=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    emergency_only: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_model(self) -> Recipient:
        return Recipient(
            id=self.id,
            name=self.name,
            email=self.email,
            phone=self.phone,
            push_token=self.push_token,
            region=Region(self.region),
            email_enabled=self.email_enabled,
            sms_enabled=self.sms_enabled,
            emergency_only=self.emergency_only,
            is_active=self.is_active,
            created_at=_as_utc(self.created_at),
        )

    @classmethod
    def from_model(cls, recipient: Recipient) -> "RecipientRow":
        return cls(
            id=recipient.id,
            name=recipient.name,
            email=recipient.email,
            phone=recipient.phone,
            push_token=recipient.push_token,
            region=recipient.region.value,
            email_enabled=recipient.email_enabled,
            sms_enabled=recipient.sms_enabled,
            emergency_only=recipient.emergency_only,
            is_active=recipient.is_active,
            created_at=recipient.created_at,
        )


class DeliveryLogRow(Base):
    __tablename__ = "alert_delivery_logs"
    __table_args__ = (
        UniqueConstraint(
            "alert_id", "recipient_id", "channel", "attempt_no",
            name="uq_delivery_attempt",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    alert_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("alerts.id", ondelete="CASCADE"), index=True,
    )
    recipient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipients.id", ondelete="CASCADE"),
    )
    channel: Mapped[str] = mapped_column(String(16))
    attempt_no: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(16), default=AttemptStatus.PENDING.value)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_model(self) -> DeliveryAttempt:
        return DeliveryAttempt(
            id=self.id,
            alert_id=self.alert_id,
            recipient_id=self.recipient_id,
            channel=Channel(self.channel),
            attempt_no=self.attempt_no,
            status=AttemptStatus(self.status),
            error_message=self.error_message,
            message_ref=self.message_ref,
            sent_at=_as_utc(self.sent_at),
            delivered_at=_as_utc(self.delivered_at),
            created_at=_as_utc(self.created_at),
        )


def _filter_alerts(
    stmt: Select,
    regions: Optional[Iterable[Region]],
    active_at: Optional[datetime],
) -> Select:
    # regions is a JSON list of quoted values; each one must appear as a token
    for region in dict.fromkeys(regions or []):
        stmt = stmt.where(cast(AlertRow.regions, Text).like(f'%"{region.value}"%'))
    if active_at is not None:
        stmt = stmt.where(or_(AlertRow.expires_at.is_(None), AlertRow.expires_at > active_at))
    return stmt


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlchemyAlertStore(AlertStore):
    """
    AlertStore backed by an async session factory.

    Outside a transaction every call runs in its own short session and
    commits on success. Inside ``transaction()`` calls share one session
    that commits when the block exits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        session: Optional[AsyncSession] = None,
    ):
        self._factory = session_factory
        self._session = session

    @asynccontextmanager
    async def _use_session(self) -> AsyncIterator[AsyncSession]:
        if self._session is not None:
            yield self._session
            return
        async with self._factory.begin() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlAlchemyAlertStore"]:
        if self._session is not None:
            # nested use joins the open transaction
            yield self
            return
        async with self._factory.begin() as session:
            yield SqlAlchemyAlertStore(self._factory, session=session)

    # ── alerts ──

    async def insert_alert(self, alert: Alert) -> Alert:
        async with self._use_session() as session:
            row = AlertRow.from_model(alert)
            session.add(row)
            await session.flush()
            return row.to_model()

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        async with self._use_session() as session:
            row = await session.get(AlertRow, alert_id)
            return row.to_model() if row else None

    async def update_alert(self, alert_id: str, **changes) -> Alert:
        unknown = set(changes) - MUTABLE_ALERT_FIELDS
        if unknown:
            raise ValueError(f"Immutable alert fields: {sorted(unknown)}")
        async with self._use_session() as session:
            row = await session.get(AlertRow, alert_id)
            if row is None:
                raise NotFoundError("Alert", id=alert_id)
            for name, value in changes.items():
                if isinstance(value, AlertDeliveryStatus):
                    value = value.value
                setattr(row, name, value)
            await session.flush()
            return row.to_model()

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
        stmt = _filter_alerts(select(AlertRow), regions, active_at)
        if created_from is not None:
            stmt = stmt.where(AlertRow.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(AlertRow.created_at <= created_to)
        if most_severe_first:
            stmt = stmt.order_by(AlertRow.severity.desc(), AlertRow.created_at.desc())
        else:
            stmt = stmt.order_by(AlertRow.created_at.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._use_session() as session:
            rows = (await session.scalars(stmt)).all()
            return [row.to_model() for row in rows]

    async def count_alerts(
        self,
        *,
        regions: Optional[Iterable[Region]] = None,
        active_at: Optional[datetime] = None,
    ) -> int:
        stmt = _filter_alerts(select(func.count(AlertRow.id)), regions, active_at)
        async with self._use_session() as session:
            return int(await session.scalar(stmt) or 0)

    async def delete_alerts(self, *, expired_before: datetime, created_before: datetime) -> int:
        async with self._use_session() as session:
            ids = (await session.scalars(
                select(AlertRow.id).where(
                    AlertRow.expires_at.is_not(None),
                    AlertRow.expires_at < expired_before,
                    AlertRow.created_at < created_before,
                )
            )).all()
            if not ids:
                return 0
            await session.execute(delete(DeliveryLogRow).where(DeliveryLogRow.alert_id.in_(ids)))
            await session.execute(delete(AlertRow).where(AlertRow.id.in_(ids)))
            return len(ids)

    # ── recipients ──

    async def insert_recipient(self, recipient: Recipient) -> Recipient:
        async with self._use_session() as session:
            session.add(RecipientRow.from_model(recipient))
            await session.flush()
            return recipient

    async def get_recipients(self, recipient_ids: Iterable[str]) -> List[Recipient]:
        ids = list(set(recipient_ids))
        if not ids:
            return []
        stmt = (
            select(RecipientRow)
            .where(RecipientRow.id.in_(ids))
            .order_by(RecipientRow.region, RecipientRow.created_at, RecipientRow.id)
        )
        async with self._use_session() as session:
            return [row.to_model() for row in (await session.scalars(stmt)).all()]

    async def find_eligible_recipients(
        self,
        regions: Iterable[Region],
        *,
        active_only: bool = True,
        emergency_only: bool = False,
    ) -> List[Recipient]:
        stmt = select(RecipientRow).where(
            RecipientRow.region.in_([r.value for r in regions]),
            (RecipientRow.email_enabled.is_(True)) | (RecipientRow.sms_enabled.is_(True)),
        )
        if active_only:
            stmt = stmt.where(RecipientRow.is_active.is_(True))
        if emergency_only:
            stmt = stmt.where(RecipientRow.emergency_only.is_(True))
        stmt = stmt.order_by(RecipientRow.region, RecipientRow.created_at, RecipientRow.id)
        async with self._use_session() as session:
            return [row.to_model() for row in (await session.scalars(stmt)).all()]

    async def count_recipients_by_region(self) -> Dict[Region, int]:
        stmt = (
            select(RecipientRow.region, func.count(RecipientRow.id))
            .where(
                RecipientRow.is_active.is_(True),
                (RecipientRow.email_enabled.is_(True)) | (RecipientRow.sms_enabled.is_(True)),
            )
            .group_by(RecipientRow.region)
        )
        async with self._use_session() as session:
            rows = (await session.execute(stmt)).all()
            return {Region(region): count for region, count in rows}

    # ── delivery log ──

    async def append_attempt(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        async with self._use_session() as session:
            previous = await session.scalar(
                select(func.max(DeliveryLogRow.attempt_no)).where(
                    DeliveryLogRow.alert_id == attempt.alert_id,
                    DeliveryLogRow.recipient_id == attempt.recipient_id,
                    DeliveryLogRow.channel == attempt.channel.value,
                )
            )
            row = DeliveryLogRow(
                id=attempt.id,
                alert_id=attempt.alert_id,
                recipient_id=attempt.recipient_id,
                channel=attempt.channel.value,
                attempt_no=(previous or 0) + 1,
                status=attempt.status.value,
                error_message=attempt.error_message,
                message_ref=attempt.message_ref,
                sent_at=attempt.sent_at,
                delivered_at=attempt.delivered_at,
                created_at=attempt.created_at,
            )
            session.add(row)
            await session.flush()
            return row.to_model()

    async def list_attempts(self, alert_id: str) -> List[DeliveryAttempt]:
        stmt = (
            select(DeliveryLogRow)
            .where(DeliveryLogRow.alert_id == alert_id)
            .order_by(DeliveryLogRow.created_at, DeliveryLogRow.attempt_no)
        )
        async with self._use_session() as session:
            return [row.to_model() for row in (await session.scalars(stmt)).all()]

    async def ping(self) -> bool:
        async with self._use_session() as session:
            await session.execute(text("SELECT 1"))
            return True
