"""
policy.py — Channel-fallback policy.

Two pure functions decide which channels a recipient is tried on:

    candidate_channels(recipient)
        Opt-in order: EMAIL (if enabled) → SMS (if enabled) → PUSH (always).

    channels_to_attempt(severity, prior_success)
        Channels still allowed once earlier channels have run:

            Severity    prior_success    Allowed
            ────────    ─────────────    ──────────────────────
            LOW/MEDIUM  False            every channel
            LOW/MEDIUM  True             none (stop; reached)
            HIGH        either           every channel (max reach)
"""

from __future__ import annotations

from typing import FrozenSet, List

from backend.alerting.alerts.models import Channel, Recipient, Severity

ALL_CHANNELS: FrozenSet[Channel] = frozenset(Channel)
NO_CHANNELS: FrozenSet[Channel] = frozenset()

# Severities that keep going after the first successful channel
EXHAUSTIVE_SEVERITIES = frozenset({Severity.HIGH})


def channels_to_attempt(severity: Severity, prior_success: bool) -> FrozenSet[Channel]:
    """Channels a recipient may still be tried on."""
    if prior_success and severity not in EXHAUSTIVE_SEVERITIES:
        return NO_CHANNELS
    return ALL_CHANNELS


def candidate_channels(recipient: Recipient) -> List[Channel]:
    """Channels the recipient opted into, in attempt order. Push is always last."""
    channels: List[Channel] = []
    if recipient.email_enabled:
        channels.append(Channel.EMAIL)
    if recipient.sms_enabled:
        channels.append(Channel.SMS)
    channels.append(Channel.PUSH)
    return channels
