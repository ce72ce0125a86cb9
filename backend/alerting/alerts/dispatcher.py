"""
dispatcher.py — Batched, concurrent multi-channel fan-out.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    recipients (ordered)
          │
          ▼
    ┌─────────────────────┐
    │  1. Partition       │  consecutive batches of batch_size
    └─────────┬───────────┘
              │   for each batch, strictly in sequence:
              ▼
    ┌─────────────────────┐
    │  2. Fan out         │  one task per recipient (asyncio.gather);
    │                     │  a raising recipient never aborts siblings
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Per recipient   │  EMAIL? → SMS? → PUSH, each attempt logged;
    │                     │  channels_to_attempt() decides when to stop
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Join + pause    │  fold results into the BatchResult;
    │                     │  sleep(inter_batch_delay) unless last batch
    └─────────────────────┘

Counting:
    success_count + failure_count == total_recipients
    channel tallies count attempts, so they may exceed total_recipients

Batch-level failure:
    anything escaping step 2 marks every recipient of that batch failed
    with the batch reason (one FAILED attempt on its first candidate
    channel) and the next batch still runs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

from backend.alerting.alerts.channels import DEFAULT_SENDERS, HEALTH_CHECKS, ChannelSender
from backend.alerting.alerts.delivery_log import DeliveryLog
from backend.alerting.alerts.models import (
    Alert,
    AlertPayload,
    BatchResult,
    Channel,
    ChannelResult,
    DeliveryOutcome,
    Recipient,
    RecipientResult,
)
from backend.alerting.alerts.policy import candidate_channels, channels_to_attempt
from backend.alerting.core.config import settings

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


def partition(recipients: Sequence[Recipient], batch_size: int) -> List[List[Recipient]]:
    """Split into consecutive chunks; ceil(N / batch_size) of them."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    return [
        list(recipients[start:start + batch_size])
        for start in range(0, len(recipients), batch_size)
    ]


class NotificationDispatcher:
    """
    Sends one alert to many recipients over email, SMS and push.

    Parameters
    ----------
    delivery_log : DeliveryLog
        Receives one row per channel attempt.
    senders : mapping of Channel → ChannelSender, optional
        Defaults to the built-in adapters.
    sleep : coroutine function, optional
        Pause between batches (``asyncio.sleep``); injectable for tests.
    """

    def __init__(
        self,
        delivery_log: DeliveryLog,
        senders: Optional[Mapping[Channel, ChannelSender]] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.delivery_log = delivery_log
        self.senders: Dict[Channel, ChannelSender] = dict(senders or DEFAULT_SENDERS)
        self._sleep = sleep

    # ── public API ──

    async def send_batch(
        self,
        recipients: Sequence[Recipient],
        alert: Union[Alert, AlertPayload],
        batch_size: Optional[int] = None,
        inter_batch_delay: Optional[float] = None,
    ) -> BatchResult:
        if batch_size is None:
            batch_size = settings.DISPATCH_BATCH_SIZE
        delay = (
            inter_batch_delay if inter_batch_delay is not None
            else settings.DISPATCH_BATCH_DELAY_SECONDS
        )
        payload = alert if isinstance(alert, AlertPayload) else AlertPayload.from_alert(alert)
        batches = partition(recipients, batch_size)
        result = BatchResult(total_recipients=len(recipients))

        logger.info(
            "Dispatching alert %s to %d recipients in %d batch(es) of ≤%d",
            payload.alert_id, len(recipients), len(batches), batch_size,
            extra={"alert_id": payload.alert_id, "recipient_count": len(recipients)},
        )
        started = time.perf_counter()

        for index, batch in enumerate(batches):
            batch_started = time.perf_counter()
            try:
                batch_results = await self._fan_out(batch, payload)
            except Exception as exc:
                logger.exception(
                    "Batch %d of alert %s failed as a whole",
                    index, payload.alert_id,
                    extra={"alert_id": payload.alert_id, "batch_index": index},
                )
                reason = f"Batch failed: {exc}"
                batch_results = [
                    await self._record_failure(recipient, payload, reason)
                    for recipient in batch
                ]

            for recipient_result in batch_results:
                result.record(recipient_result)
            result.batches_run += 1

            logger.info(
                "Batch %d/%d of alert %s: %d/%d delivered",
                index + 1, len(batches), payload.alert_id,
                sum(1 for r in batch_results if r.delivered), len(batch),
                extra={
                    "alert_id": payload.alert_id,
                    "batch_index": index,
                    "batch_size": len(batch),
                    "duration_ms": round((time.perf_counter() - batch_started) * 1000, 1),
                },
            )

            if index < len(batches) - 1 and delay > 0:
                await self._sleep(delay)

        logger.info(
            "Alert %s dispatch finished: %d delivered, %d failed",
            payload.alert_id, result.success_count, result.failure_count,
            extra={
                "alert_id": payload.alert_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return result

    async def send_to_recipient(
        self,
        recipient: Recipient,
        alert: Union[Alert, AlertPayload],
    ) -> RecipientResult:
        """Walk the recipient's fallback chain, logging every attempt."""
        payload = alert if isinstance(alert, AlertPayload) else AlertPayload.from_alert(alert)
        result = RecipientResult(recipient_id=recipient.id)
        reached = False

        for channel in candidate_channels(recipient):
            if channel not in channels_to_attempt(payload.severity, reached):
                break
            outcome = await self._attempt(channel, recipient, payload)
            await self._log_attempt(payload.alert_id, recipient.id, channel, outcome)
            result.channel_results.append(ChannelResult(
                channel=channel,
                success=outcome.success,
                error=outcome.error,
                message_ref=outcome.message_ref,
            ))
            reached = reached or outcome.success

        if not reached:
            logger.warning(
                "Recipient %s unreachable for alert %s",
                recipient.id, payload.alert_id,
                extra={"alert_id": payload.alert_id, "recipient_id": recipient.id},
            )
        return result

    async def health(self) -> Dict[str, bool]:
        """Readiness of every configured channel."""
        status: Dict[str, bool] = {}
        for channel in self.senders:
            check = HEALTH_CHECKS.get(channel)
            try:
                status[channel.value] = await check() if check else True
            except Exception as exc:
                logger.error("Health check for %s failed: %s", channel.value, exc)
                status[channel.value] = False
        return status

    # ── internals ──

    async def _fan_out(
        self,
        batch: Sequence[Recipient],
        payload: AlertPayload,
    ) -> List[RecipientResult]:
        outcomes = await asyncio.gather(
            *(self.send_to_recipient(recipient, payload) for recipient in batch),
            return_exceptions=True,
        )
        results: List[RecipientResult] = []
        for recipient, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Delivery to %s raised: %s", recipient.id, outcome,
                    extra={"alert_id": payload.alert_id, "recipient_id": recipient.id},
                )
                outcome = await self._record_failure(recipient, payload, str(outcome))
            results.append(outcome)
        return results

    async def _attempt(
        self,
        channel: Channel,
        recipient: Recipient,
        payload: AlertPayload,
    ) -> DeliveryOutcome:
        sender = self.senders.get(channel)
        if sender is None:
            return DeliveryOutcome.failed(f"No sender configured for {channel.value}")
        try:
            return await sender(recipient, payload)
        except Exception as exc:
            logger.error(
                "%s sender raised for %s: %s", channel.value, recipient.id, exc,
                extra={"channel": channel.value, "recipient_id": recipient.id},
            )
            return DeliveryOutcome.failed(str(exc) or type(exc).__name__)

    async def _log_attempt(
        self,
        alert_id: str,
        recipient_id: str,
        channel: Channel,
        outcome: DeliveryOutcome,
    ) -> None:
        try:
            await self.delivery_log.append(alert_id, recipient_id, channel, outcome)
        except Exception:
            # a lost row never changes the recipient outcome
            logger.exception(
                "Could not log %s attempt for %s", channel.value, recipient_id,
                extra={"alert_id": alert_id, "recipient_id": recipient_id, "channel": channel.value},
            )

    async def _record_failure(
        self,
        recipient: Recipient,
        payload: AlertPayload,
        reason: str,
    ) -> RecipientResult:
        channel = candidate_channels(recipient)[0]
        outcome = DeliveryOutcome.failed(reason)
        await self._log_attempt(payload.alert_id, recipient.id, channel, outcome)
        return RecipientResult(
            recipient_id=recipient.id,
            channel_results=[ChannelResult(channel=channel, success=False, error=reason)],
            error=reason,
        )

