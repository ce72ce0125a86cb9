"""
test_health_validation.py — Health aggregation and request validation.

Covers:
    • run_health_check() status roll-up
    • validate_dispatch_request() field rules and normalisation

Run with:
    pytest tests/test_health_validation.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.alerting.alerts.models import AlertType, DispatchRequest, Region, Severity
from backend.alerting.alerts.validation import validate_dispatch_request
from backend.alerting.core.errors import ValidationError
from backend.alerting.core.health import HealthStatus, run_health_check
from backend.alerting.core.rate_limit import InMemoryRateLimiter

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _make_request(**overrides) -> DispatchRequest:
    fields = dict(
        type=AlertType.HEAVY_RAIN,
        severity=Severity.LOW,
        title="Heavy Rain",
        message="Showers and thunderstorms this afternoon.",
        regions=[Region.MANCHESTER],
    )
    fields.update(overrides)
    return DispatchRequest(**fields)


# ═══════════════════════════════════════════════════════════════════════════
# Health
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthReport:

    @pytest.mark.asyncio
    async def test_all_healthy(self, service):
        report = await run_health_check(service, InMemoryRateLimiter(60, 10))
        assert report.status == HealthStatus.HEALTHY
        assert [c.name for c in report.components] == ["store", "channels", "rate_limiter"]

    @pytest.mark.asyncio
    async def test_one_channel_down_is_degraded(self, service, monkeypatch):
        async def readiness():
            return {"email": True, "sms": False, "push": True}

        monkeypatch.setattr(service.dispatcher, "health", readiness)
        report = await run_health_check(service)
        assert report.status == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_store_down_is_unhealthy(self, service, store, monkeypatch):
        async def down():
            raise ConnectionError("refused")

        monkeypatch.setattr(store, "ping", down)
        report = await run_health_check(service)
        assert report.status == HealthStatus.UNHEALTHY
        assert report.to_dict()["components"][0]["message"] == "refused"


# ═══════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestValidateDispatchRequest:

    def test_valid_request_passes_through(self):
        request = validate_dispatch_request(_make_request(), now=NOW)
        assert request.regions == [Region.MANCHESTER]

    @pytest.mark.parametrize("title,ok", [
        ("Rain", False), ("Rain!", True), ("x" * 255, True), ("x" * 256, False), ("  Rain  ", False),
    ])
    def test_title_bounds(self, title, ok):
        if ok:
            validate_dispatch_request(_make_request(title=title), now=NOW)
        else:
            with pytest.raises(ValidationError):
                validate_dispatch_request(_make_request(title=title), now=NOW)

    def test_message_too_long(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_dispatch_request(_make_request(message="m" * 2001), now=NOW)
        assert exc_info.value.errors == [
            {"field": "message", "message": "message must be between 10 and 2000 characters"},
        ]

    def test_severity_by_number(self):
        assert validate_dispatch_request(_make_request(severity=3), now=NOW).severity is Severity.HIGH

    def test_naive_expiry_treated_as_utc(self):
        request = validate_dispatch_request(
            _make_request(expires_at=datetime(2026, 6, 2)), now=NOW,
        )
        assert request.expires_at.tzinfo == timezone.utc

    def test_expiry_equal_to_now_rejected(self):
        with pytest.raises(ValidationError):
            validate_dispatch_request(_make_request(expires_at=NOW), now=NOW)

    def test_future_expiry_accepted(self):
        request = validate_dispatch_request(
            _make_request(expires_at=NOW + timedelta(minutes=5)), now=NOW,
        )
        assert request.expires_at == NOW + timedelta(minutes=5)
