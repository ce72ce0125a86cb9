"""
test_recipients.py — Recipient resolution tests.

Covers:
    • Eligibility (active, region, at least one channel)
    • Emergency-only filtering
    • Deterministic ordering for batch assignment
    • Empty region set rejected

Run with:
    pytest tests/test_recipients.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.alerting.alerts.models import Recipient, Region
from backend.alerting.alerts.recipients import RecipientResolver
from backend.alerting.core.errors import ValidationError

BASE_TIME = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _make_recipient(rid: str, region: Region, minutes: int = 0, **kw) -> Recipient:
    return Recipient(
        id=rid,
        name=rid,
        email=f"{rid.lower()}@example.com",
        region=region,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kw,
    )


@pytest.fixture
def resolver(store):
    return RecipientResolver(store)


class TestResolve:

    @pytest.mark.asyncio
    async def test_region_then_registration_order(self, store, resolver):
        # inserted out of order on purpose
        for r in [
            _make_recipient("P2", Region.PORTLAND, minutes=20),
            _make_recipient("K1", Region.KINGSTON, minutes=30),
            _make_recipient("P1", Region.PORTLAND, minutes=10),
            _make_recipient("K2", Region.KINGSTON, minutes=40),
        ]:
            await store.insert_recipient(r)

        found = await resolver.resolve([Region.PORTLAND, Region.KINGSTON])
        assert [r.id for r in found] == ["K1", "K2", "P1", "P2"]

    @pytest.mark.asyncio
    async def test_skips_inactive_and_unsubscribed(self, store, resolver):
        await store.insert_recipient(_make_recipient("ok", Region.ST_ANN))
        await store.insert_recipient(_make_recipient("sms-only", Region.ST_ANN,
                                                     email_enabled=False, sms_enabled=True))
        await store.insert_recipient(_make_recipient("gone", Region.ST_ANN, is_active=False))
        await store.insert_recipient(_make_recipient("muted", Region.ST_ANN,
                                                     email_enabled=False, sms_enabled=False))

        found = await resolver.resolve([Region.ST_ANN])
        assert {r.id for r in found} == {"ok", "sms-only"}

    @pytest.mark.asyncio
    async def test_duplicate_regions_do_not_duplicate_recipients(self, store, resolver):
        await store.insert_recipient(_make_recipient("K1", Region.KINGSTON))
        found = await resolver.resolve([Region.KINGSTON, Region.KINGSTON])
        assert [r.id for r in found] == ["K1"]

    @pytest.mark.asyncio
    async def test_empty_regions_rejected(self, resolver):
        with pytest.raises(ValidationError) as exc_info:
            await resolver.resolve([])
        assert exc_info.value.details["field"] == "regions"

    @pytest.mark.asyncio
    async def test_no_matches_is_empty_list(self, resolver):
        assert await resolver.resolve([Region.TRELAWNY]) == []


class TestEmergencyOnly:

    @pytest.mark.asyncio
    async def test_only_emergency_subscribers(self, store, resolver):
        await store.insert_recipient(_make_recipient("all", Region.CLARENDON))
        await store.insert_recipient(_make_recipient("sos", Region.CLARENDON, emergency_only=True))

        assert [r.id for r in await resolver.resolve_emergency([Region.CLARENDON])] == ["sos"]
        assert len(await resolver.resolve([Region.CLARENDON])) == 2
