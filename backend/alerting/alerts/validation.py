"""
validation.py — Pre-flight checks on a dispatch request.

Every rule is checked and every violation reported in one
ValidationError, before any alert row exists.

    Field       Rule
    ─────────   ─────────────────────────────────────────
    type        a known AlertType
    severity    a known Severity
    title       5 – 255 characters (after trimming)
    message     10 – 2000 characters (after trimming)
    regions     non-empty, every entry a known Region
    expires_at  strictly in the future, when present
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Dict, List, Optional

from backend.alerting.alerts.models import AlertType, DispatchRequest, Region, Severity
from backend.alerting.core.errors import ValidationError

TITLE_MIN, TITLE_MAX = 5, 255
MESSAGE_MIN, MESSAGE_MAX = 10, 2000


def _length_error(field: str, value: str, low: int, high: int) -> Optional[Dict[str, str]]:
    if not isinstance(value, str):
        return {"field": field, "message": f"{field} must be a string"}
    if not low <= len(value.strip()) <= high:
        return {
            "field": field,
            "message": f"{field} must be between {low} and {high} characters",
        }
    return None


def validate_dispatch_request(
    request: DispatchRequest,
    now: Optional[datetime] = None,
) -> DispatchRequest:
    """
    Validate ``request`` and return a normalised copy.

    Enum-like fields given as raw values are coerced; duplicate regions are
    dropped keeping first-seen order.

    Raises
    ------
    ValidationError
        Carrying every field-level error in ``.errors``.
    """
    now = now or datetime.now(timezone.utc)
    errors: List[Dict[str, str]] = []

    alert_type = request.type
    try:
        alert_type = AlertType(request.type)
    except ValueError:
        errors.append({"field": "type", "message": f"Unknown alert type: {request.type!r}"})

    severity = request.severity
    try:
        severity = (
            Severity[request.severity.upper()]
            if isinstance(request.severity, str)
            else Severity(request.severity)
        )
    except (KeyError, ValueError):
        errors.append({"field": "severity", "message": f"Unknown severity: {request.severity!r}"})

    for problem in (
        _length_error("title", request.title, TITLE_MIN, TITLE_MAX),
        _length_error("message", request.message, MESSAGE_MIN, MESSAGE_MAX),
    ):
        if problem:
            errors.append(problem)

    regions: List[Region] = []
    if not request.regions:
        errors.append({"field": "regions", "message": "At least one region is required"})
    else:
        for raw in request.regions:
            try:
                region = Region(raw)
            except ValueError:
                errors.append({"field": "regions", "message": f"Unknown region: {raw!r}"})
                continue
            if region not in regions:
                regions.append(region)

    expires_at = request.expires_at
    if expires_at is not None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= now:
            errors.append({"field": "expires_at", "message": "Expiration must be in the future"})

    if errors:
        raise ValidationError(
            f"Invalid alert request ({len(errors)} error(s))", errors=errors,
        )

    return dataclasses.replace(
        request,
        type=alert_type,
        severity=severity,
        title=request.title.strip(),
        message=request.message.strip(),
        regions=regions,
        expires_at=expires_at,
    )
