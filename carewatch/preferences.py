"""
Preference Gate -- Which Channels May Reach a Recipient Right Now.

The gate is a pure function of a recipient's ``NotificationPreference``,
the alert's severity and immediacy, and the current instant.  It performs
no I/O; the orchestrator loads one preference snapshot per recipient and
passes it in.

**Rules, in order:**

1. The starting set is the recipient's enabled channels.  Each of them is
   *considered*, so each ends up in the ledger as sent, failed, or
   suppressed.
2. ``incident_alerts_enabled=False`` suppresses every considered channel.
3. Inside the quiet window every channel is suppressed unless the alert
   requires an immediate alert, is high or critical, and the recipient has
   ``emergency_override`` set.  An emergency that is held back because the
   recipient turned the override off is recorded as
   ``NO_EMERGENCY_OVERRIDE`` rather than ``QUIET_HOURS``.
4. Permitted channels are ordered preferred channel first, then
   push, sms, email.

Quiet hours are ``[start, end)`` in the preference's own timezone and may
wrap midnight (22:00-07:00).  ``start == end`` means no quiet window.
"""

from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from carewatch.errors import RecipientResolutionError
from carewatch.models import (
    CHANNEL_PRIORITY,
    Channel,
    NotificationPreference,
    Recipient,
    Severity,
    SuppressionReason,
)
from carewatch.store import PreferenceRepository


class GateDecision(BaseModel):
    """Outcome of gating one recipient for one alert."""

    recipient_id: str
    considered: list[Channel] = Field(
        default_factory=list,
        description="Enabled channels, in dispatch order.  Each gets a ledger row.",
    )
    permitted: list[Channel] = Field(default_factory=list)
    suppressed: dict[Channel, SuppressionReason] = Field(default_factory=dict)
    in_quiet_hours: bool = False


def in_quiet_hours(preference: NotificationPreference, now: datetime) -> bool:
    """True when ``now`` falls inside the preference's quiet window.

    Naive datetimes are taken to be UTC.
    """
    if not preference.has_quiet_hours:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(preference.timezone)).time()
    return _within(local, preference.quiet_hours_start, preference.quiet_hours_end)


def _within(t: time, start: time, end: time) -> bool:
    if start < end:
        return start <= t < end
    # Window wraps midnight.
    return t >= start or t < end


def order_channels(channels, preferred: Optional[Channel]) -> list[Channel]:
    ordered = [c for c in CHANNEL_PRIORITY if c in channels]
    if preferred in ordered:
        ordered.remove(preferred)
        ordered.insert(0, preferred)
    return ordered


class PreferenceGate:
    """Stateless gate.  One instance is shared across all alerts."""

    def evaluate(
        self,
        recipient: Recipient,
        preference: NotificationPreference,
        severity: Severity,
        now: datetime,
        immediate: bool = False,
    ) -> GateDecision:
        """Decide, channel by channel, what this recipient may receive.

        Args:
            recipient: The resolved recipient.
            preference: Snapshot of their preferences for this resident.
            severity: Alert severity.
            now: Current instant; converted to the preference's timezone.
            immediate: Whether the detection requires an immediate alert.

        Returns:
            A ``GateDecision`` whose ``permitted`` and ``suppressed`` sets
            partition ``considered``.
        """
        considered = order_channels(preference.enabled_channels, preference.preferred_channel)
        quiet = in_quiet_hours(preference, now)

        reason: Optional[SuppressionReason] = None
        if not preference.incident_alerts_enabled:
            reason = SuppressionReason.INCIDENT_ALERTS_DISABLED
        elif quiet:
            emergency = immediate and severity.is_urgent
            if not emergency:
                reason = SuppressionReason.QUIET_HOURS
            elif not preference.emergency_override:
                reason = SuppressionReason.NO_EMERGENCY_OVERRIDE

        if reason is None:
            return GateDecision(
                recipient_id=recipient.recipient_id,
                considered=considered,
                permitted=list(considered),
                in_quiet_hours=quiet,
            )
        return GateDecision(
            recipient_id=recipient.recipient_id,
            considered=considered,
            permitted=[],
            suppressed={channel: reason for channel in considered},
            in_quiet_hours=quiet,
        )

    def permitted_channels(
        self,
        recipient: Recipient,
        preference: NotificationPreference,
        severity: Severity,
        now: datetime,
        immediate: bool = False,
    ) -> list[Channel]:
        """Ordered channels the recipient may be contacted on now."""
        return self.evaluate(recipient, preference, severity, now, immediate).permitted


async def load_preference(
    repository: PreferenceRepository,
    recipient: Recipient,
) -> NotificationPreference:
    """Read the recipient's preference row, falling back to the defaults
    a new relationship starts with.

    Raises:
        RecipientResolutionError: If the repository read fails.
    """
    try:
        stored = await repository.get_preference(recipient.recipient_id, recipient.resident_id)
    except RecipientResolutionError:
        raise
    except Exception as exc:
        raise RecipientResolutionError(
            f"Could not load preferences for recipient '{recipient.recipient_id}'",
            details={
                "recipient_id": recipient.recipient_id,
                "resident_id": recipient.resident_id,
                "error_type": type(exc).__name__,
            },
        ) from exc
    if stored is not None:
        return stored
    return NotificationPreference.defaults_for(recipient.recipient_id, recipient.resident_id)
