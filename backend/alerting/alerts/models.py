"""
models.py — Shared data structures for the alert dispatch engine.

Defines:
    • Severity            — ordered LOW < MEDIUM < HIGH
    • AlertType, Region   — alert classification and targeting
    • Channel             — delivery medium (email / SMS / push)
    • AlertDeliveryStatus — campaign lifecycle
    • AttemptStatus       — delivery-log row status
    • Alert, Recipient, DeliveryAttempt — stored entities
    • DeliveryOutcome     — what a channel adapter returns
    • RecipientResult, BatchResult, DeliveryStats — derived aggregates
    • DispatchRequest, DispatchResult — orchestrator input / output
    • AlertWithStats      — alert read model with log-derived stats

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    PENDING ──► SENDING ──► COMPLETED   (failed_count == 0)
                   │
                   └──────► FAILED      (failed_count  > 0)

    A retry moves a finalized alert back to SENDING and re-finalizes it.
    An alert stuck in SENDING after the dispatch call returned means the
    fan-out itself crashed (DispatchFatalError).

═══════════════════════════════════════════════════════════════════════════
COUNTING RULES
═══════════════════════════════════════════════════════════════════════════

    Recipient level:  delivered if ANY channel attempt succeeded.
                      success_count + failure_count == total_recipients
    Channel level:    every attempt counts once under its channel, so the
                      per-channel tallies may exceed the recipient count.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Severity(IntEnum):
    """Alert severity — integer ordering enables comparison."""
    LOW    = 1
    MEDIUM = 2
    HIGH   = 3


class AlertType(str, Enum):
    FLOOD          = "flood"
    FLOOD_WARNING  = "flood_warning"
    HEAVY_RAIN     = "heavy_rain"
    HIGH_WINDS     = "high_winds"
    WEATHER        = "weather"
    SEVERE_WEATHER = "severe_weather"
    EMERGENCY      = "emergency"
    ALL_CLEAR      = "all_clear"


class Region(str, Enum):
    """Administrative subdivisions recipients register under (parishes)."""
    KINGSTON     = "kingston"
    ST_ANDREW    = "st_andrew"
    ST_THOMAS    = "st_thomas"
    PORTLAND     = "portland"
    ST_MARY      = "st_mary"
    ST_ANN       = "st_ann"
    TRELAWNY     = "trelawny"
    ST_JAMES     = "st_james"
    HANOVER      = "hanover"
    WESTMORELAND = "westmoreland"
    ST_ELIZABETH = "st_elizabeth"
    MANCHESTER   = "manchester"
    CLARENDON    = "clarendon"
    ST_CATHERINE = "st_catherine"


class Channel(str, Enum):
    """Delivery channels, in the order they are attempted."""
    EMAIL = "email"
    SMS   = "sms"
    PUSH  = "push"


class AlertDeliveryStatus(str, Enum):
    PENDING   = "pending"
    SENDING   = "sending"
    COMPLETED = "completed"
    FAILED    = "failed"


class AttemptStatus(str, Enum):
    """Status of one delivery-log row."""
    PENDING   = "pending"
    SENT      = "sent"
    DELIVERED = "delivered"
    FAILED    = "failed"
    BOUNCED   = "bounced"


SUCCESS_STATUSES = frozenset({AttemptStatus.SENT, AttemptStatus.DELIVERED})
FAILURE_STATUSES = frozenset({AttemptStatus.FAILED, AttemptStatus.BOUNCED})


# ═══════════════════════════════════════════════════════════════════════════
# Stored Entities
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Alert:
    """
    One emergency-notification campaign.

    Only ``delivery_status`` and the three counters change after creation,
    and only through the alert service.
    """
    type: AlertType
    severity: Severity
    title: str
    message: str
    regions: List[Region]
    id: str = field(default_factory=_generate_id)
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    expires_at: Optional[datetime] = None
    emergency_only: bool = False
    delivery_status: AlertDeliveryStatus = AlertDeliveryStatus.PENDING
    recipient_count: int = 0
    delivered_count: int = 0
    failed_count: int = 0

    @property
    def is_finalized(self) -> bool:
        return self.delivery_status in (
            AlertDeliveryStatus.COMPLETED, AlertDeliveryStatus.FAILED,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.name,
            "title": self.title,
            "message": self.message,
            "regions": [r.value for r in self.regions],
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "expires_at": (
                self.expires_at.isoformat() if self.expires_at else None
            ),
            "emergency_only": self.emergency_only,
            "delivery_status": self.delivery_status.value,
            "recipient_count": self.recipient_count,
            "delivered_count": self.delivered_count,
            "failed_count": self.failed_count,
        }


@dataclass
class Recipient:
    """
    A registered resident who can receive alerts.

    Attributes
    ----------
    id : str
        Unique identifier.
    name : str
        Display name.
    email : str
        Email address (primary channel).
    region : Region
        Region the recipient registered under.
    phone : str | None
        E.164 phone number for SMS.
    push_token : str | None
        Push subscription token.
    email_enabled, sms_enabled : bool
        Per-channel opt-in.
    emergency_only : bool
        Recipient only wants emergency alerts.
    is_active : bool
        Inactive recipients are never resolved.
    created_at : datetime
        Registration time; secondary sort key for batch assignment.
    """
    id: str
    name: str
    email: str
    region: Region
    phone: Optional[str] = None
    push_token: Optional[str] = None
    email_enabled: bool = True
    sms_enabled: bool = False
    emergency_only: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)

    @property
    def has_enabled_channel(self) -> bool:
        return self.email_enabled or self.sms_enabled

    def sort_key(self) -> Tuple[str, datetime, str]:
        return (self.region.value, self.created_at, self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "region": self.region.value,
            "email_enabled": self.email_enabled,
            "sms_enabled": self.sms_enabled,
            "emergency_only": self.emergency_only,
            "is_active": self.is_active,
        }


@dataclass(frozen=True)
class DeliveryAttempt:
    """One logged try of one channel for one recipient. Never mutated."""
    alert_id: str
    recipient_id: str
    channel: Channel
    status: AttemptStatus
    attempt_no: int = 1
    error_message: Optional[str] = None
    message_ref: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    id: str = field(default_factory=_generate_id)

    @property
    def key(self) -> Tuple[str, str, Channel, int]:
        return (self.alert_id, self.recipient_id, self.channel, self.attempt_no)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "attempt_no": self.attempt_no,
            "status": self.status.value,
            "error_message": self.error_message,
            "message_ref": self.message_ref,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "delivered_at": (
                self.delivered_at.isoformat() if self.delivered_at else None
            ),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Channel I/O
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertPayload:
    """Channel-neutral view of an alert handed to every adapter."""
    alert_id: str
    type: AlertType
    severity: Severity
    title: str
    message: str
    regions: List[Region]

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertPayload":
        return cls(
            alert_id=alert.id,
            type=alert.type,
            severity=alert.severity,
            title=alert.title,
            message=alert.message,
            regions=list(alert.regions),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a single adapter call."""
    success: bool
    message_ref: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, message_ref: Optional[str] = None) -> "DeliveryOutcome":
        return cls(success=True, message_ref=message_ref)

    @classmethod
    def failed(cls, error: str) -> "DeliveryOutcome":
        return cls(success=False, error=error)


# ═══════════════════════════════════════════════════════════════════════════
# Aggregates
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ChannelResult:
    channel: Channel
    success: bool
    error: Optional[str] = None
    message_ref: Optional[str] = None


@dataclass
class RecipientResult:
    """Every channel tried for one recipient, in attempt order."""
    recipient_id: str
    channel_results: List[ChannelResult] = field(default_factory=list)
    error: Optional[str] = None  # set when the recipient failed as a whole

    @property
    def delivered(self) -> bool:
        return any(r.success for r in self.channel_results)

    @property
    def channels_attempted(self) -> List[Channel]:
        return [r.channel for r in self.channel_results]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "delivered": self.delivered,
            "channels": [
                {
                    "channel": r.channel.value,
                    "success": r.success,
                    "error": r.error,
                    "message_ref": r.message_ref,
                }
                for r in self.channel_results
            ],
            "error": self.error,
        }


@dataclass
class ChannelTally:
    sent: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "failed": self.failed}


def _empty_tallies() -> Dict[Channel, ChannelTally]:
    return {channel: ChannelTally() for channel in Channel}


@dataclass
class BatchResult:
    """Aggregate outcome of a dispatch or retry run. Never persisted."""
    total_recipients: int = 0
    success_count: int = 0
    failure_count: int = 0
    delivery_stats: Dict[Channel, ChannelTally] = field(default_factory=_empty_tallies)
    results: List[RecipientResult] = field(default_factory=list)
    batches_run: int = 0

    @classmethod
    def empty(cls) -> "BatchResult":
        return cls()

    def record(self, result: RecipientResult) -> None:
        """Fold one recipient's outcome into the totals."""
        self.results.append(result)
        if result.delivered:
            self.success_count += 1
        else:
            self.failure_count += 1
        for channel_result in result.channel_results:
            tally = self.delivery_stats[channel_result.channel]
            if channel_result.success:
                tally.sent += 1
            else:
                tally.failed += 1

    @property
    def success_rate(self) -> float:
        if self.total_recipients == 0:
            return 0.0
        return self.success_count / self.total_recipients

    def to_dict(self, include_results: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "total_recipients": self.total_recipients,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "success_rate": f"{self.success_rate:.1%}",
            "batches_run": self.batches_run,
            "delivery_stats": {
                channel.value: tally.to_dict()
                for channel, tally in self.delivery_stats.items()
            },
        }
        if include_results:
            d["results"] = [r.to_dict() for r in self.results]
        return d


@dataclass
class ChannelStats:
    sent: int = 0
    failed: int = 0
    pending: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "failed": self.failed, "pending": self.pending}


@dataclass
class DeliveryStats:
    """Delivery-log summary for one alert."""
    total: int = 0
    delivered: int = 0
    failed: int = 0
    pending: int = 0
    by_channel: Dict[Channel, ChannelStats] = field(
        default_factory=lambda: {channel: ChannelStats() for channel in Channel}
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "delivered": self.delivered,
            "failed": self.failed,
            "pending": self.pending,
            "by_channel": {
                channel.value: stats.to_dict()
                for channel, stats in self.by_channel.items()
            },
        }


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator I/O
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class DispatchRequest:
    """A typed dispatch request, as produced by the API or weather boundary."""
    type: AlertType
    severity: Severity
    title: str
    message: str
    regions: List[Region]
    expires_at: Optional[datetime] = None
    emergency_only: bool = False


@dataclass
class DispatchResult:
    alert: Alert
    dispatch_result: BatchResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert": self.alert.to_dict(),
            "dispatch": self.dispatch_result.to_dict(),
        }


@dataclass
class AlertWithStats:
    alert: Alert
    delivery_stats: DeliveryStats

    def to_dict(self) -> Dict[str, Any]:
        return {**self.alert.to_dict(), "delivery_stats": self.delivery_stats.to_dict()}
