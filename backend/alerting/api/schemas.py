"""
Pydantic schemas for the alert dispatch API.

Separated from the route handler so they are reusable across
the codebase (background workers, weather triggers, tests).

The request schema only checks shape and enum membership; length and
expiry rules live in ``alerts.validation`` so every caller, HTTP or not,
gets the same field-level errors.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.alerting.alerts.models import (
    AlertType,
    DispatchRequest,
    Region,
    Severity,
)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class AlertDispatchIn(BaseModel):
    """Body of ``POST /api/v1/alerts/send``."""
    type: AlertType = Field(..., examples=["flood_warning"])
    severity: str = Field(
        ..., examples=["HIGH"],
        description="LOW / MEDIUM / HIGH",
    )
    title: str = Field(..., examples=["Flash Flood Warning"])
    message: str = Field(
        ..., examples=["Heavy rainfall expected. Move to higher ground immediately."],
    )
    regions: List[Region] = Field(..., examples=[["kingston", "st_andrew"]])
    expires_at: Optional[datetime] = Field(None, description="ISO-8601, must be in the future")
    emergency_only: bool = Field(
        False,
        description="Only notify recipients who opted into emergency-only alerts",
    )

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, v: str) -> str:
        v = v.upper()
        if v not in Severity.__members__:
            raise ValueError(f"severity must be one of {list(Severity.__members__)}")
        return v

    def to_request(self) -> DispatchRequest:
        return DispatchRequest(
            type=self.type,
            severity=Severity[self.severity],
            title=self.title,
            message=self.message,
            regions=list(self.regions),
            expires_at=self.expires_at,
            emergency_only=self.emergency_only,
        )


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class AlertOut(BaseModel):
    id: str
    type: str
    severity: str
    title: str
    message: str
    regions: List[str]
    created_by: Optional[str] = None
    created_at: str
    expires_at: Optional[str] = None
    emergency_only: bool = False
    delivery_status: str
    recipient_count: int
    delivered_count: int
    failed_count: int


class BatchResultOut(BaseModel):
    total_recipients: int
    success_count: int
    failure_count: int
    success_rate: str
    batches_run: int
    delivery_stats: Dict[str, Dict[str, int]]


class DispatchOut(BaseModel):
    success: bool = True
    alert: AlertOut
    dispatch: BatchResultOut


class AlertStatusOut(BaseModel):
    success: bool = True
    alert: AlertOut
    delivery_stats: Dict[str, Any]


class RetryOut(BaseModel):
    success: bool = True
    alert_id: str
    retry: BatchResultOut
