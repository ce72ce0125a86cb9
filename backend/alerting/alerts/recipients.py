"""
recipients.py — Recipient resolution for a target region set.

A recipient is eligible when they are active, registered in one of the
target regions and opted into at least one channel (email or SMS). The
result order is region, then registration time, then id, so batch
assignment is reproducible between runs.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from backend.alerting.alerts.models import Recipient, Region
from backend.alerting.alerts.store import AlertStore
from backend.alerting.core.database import with_retry
from backend.alerting.core.errors import ValidationError

logger = logging.getLogger(__name__)


class RecipientResolver:
    """Read-only query over the recipient table."""

    def __init__(self, store: AlertStore):
        self.store = store

    async def resolve(
        self,
        regions: Iterable[Region],
        emergency_only: bool = False,
        *,
        store: Optional[AlertStore] = None,
    ) -> List[Recipient]:
        """
        Eligible recipients in ``regions``.

        Pass ``store`` to read through an open transaction; the query then
        runs once and the enclosing transaction owns retries.

        Raises
        ------
        ValidationError
            If ``regions`` is empty.
        StoreError / StoreUnavailableError
            Propagated from the store after retries.
        """
        targets = list(dict.fromkeys(regions))
        if not targets:
            raise ValidationError("At least one region is required", field="regions")

        def _query():
            return (store or self.store).find_eligible_recipients(
                targets, active_only=True, emergency_only=emergency_only,
            )

        if store is not None:
            recipients = await _query()
        else:
            recipients = await with_retry(_query, "Find eligible recipients")

        logger.info(
            "Resolved %d recipients in %d region(s)%s",
            len(recipients), len(targets),
            " (emergency only)" if emergency_only else "",
            extra={"recipient_count": len(recipients)},
        )
        return recipients

    async def resolve_emergency(self, regions: Iterable[Region]) -> List[Recipient]:
        return await self.resolve(regions, emergency_only=True)
