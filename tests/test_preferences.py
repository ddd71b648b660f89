"""
Tests for carewatch.preferences -- Preference Gate.

Covers: channel ordering, quiet windows that wrap midnight, timezone
conversion, emergency override in both directions, incident opt-out,
start == end meaning no window, and default preferences for missing rows.
"""

from __future__ import annotations

from datetime import datetime, time, timezone

import pytest

from carewatch.errors import RecipientResolutionError
from carewatch.models import (
    Channel,
    FamilyContact,
    NotificationPreference,
    Severity,
    SuppressionReason,
)
from carewatch.preferences import PreferenceGate, in_quiet_hours, load_preference
from carewatch.store import InMemoryCareStore

_ALL = {Channel.PUSH, Channel.SMS, Channel.EMAIL}
_RECIPIENT = FamilyContact(recipient_id="rcp_1", resident_id="res_1")


def _make_preference(**overrides) -> NotificationPreference:
    fields = {
        "recipient_id": "rcp_1",
        "resident_id": "res_1",
        "enabled_channels": _ALL,
        "preferred_channel": Channel.PUSH,
    }
    fields.update(overrides)
    return NotificationPreference(**fields)


def _quiet(**overrides) -> NotificationPreference:
    return _make_preference(
        quiet_hours_start=time(22, 0),
        quiet_hours_end=time(7, 0),
        **overrides,
    )


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, 15, hour, minute, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# 1. Ordering
# ---------------------------------------------------------------------------

class TestOrdering:
    def test_default_priority(self):
        gate = PreferenceGate()
        channels = gate.permitted_channels(_RECIPIENT, _make_preference(), Severity.MEDIUM, _at(12))
        assert channels == [Channel.PUSH, Channel.SMS, Channel.EMAIL]

    def test_preferred_channel_first(self):
        gate = PreferenceGate()
        pref = _make_preference(preferred_channel=Channel.EMAIL)
        channels = gate.permitted_channels(_RECIPIENT, pref, Severity.MEDIUM, _at(12))
        assert channels == [Channel.EMAIL, Channel.PUSH, Channel.SMS]

    def test_only_enabled_channels(self):
        gate = PreferenceGate()
        pref = _make_preference(enabled_channels={Channel.SMS, Channel.EMAIL}, preferred_channel=Channel.SMS)
        decision = gate.evaluate(_RECIPIENT, pref, Severity.MEDIUM, _at(12))
        assert decision.considered == [Channel.SMS, Channel.EMAIL]
        assert decision.permitted == [Channel.SMS, Channel.EMAIL]
        assert decision.suppressed == {}

    def test_nothing_enabled(self):
        gate = PreferenceGate()
        pref = _make_preference(enabled_channels=set())
        decision = gate.evaluate(_RECIPIENT, pref, Severity.CRITICAL, _at(12), immediate=True)
        assert decision.considered == []
        assert decision.permitted == []


# ---------------------------------------------------------------------------
# 2. Quiet hours
# ---------------------------------------------------------------------------

class TestQuietHours:
    @pytest.mark.parametrize("hour,minute,expected", [
        (21, 59, False),
        (22, 0, True),
        (23, 30, True),
        (0, 0, True),
        (6, 59, True),
        (7, 0, False),
        (12, 0, False),
    ])
    def test_window_wraps_midnight(self, hour, minute, expected):
        assert in_quiet_hours(_quiet(), _at(hour, minute)) is expected

    def test_daytime_window(self):
        pref = _make_preference(quiet_hours_start=time(13, 0), quiet_hours_end=time(15, 0))
        assert in_quiet_hours(pref, _at(14))
        assert not in_quiet_hours(pref, _at(15))

    def test_start_equals_end_is_no_window(self):
        pref = _make_preference(quiet_hours_start=time(9, 0), quiet_hours_end=time(9, 0))
        assert not in_quiet_hours(pref, _at(9))

    def test_now_converted_to_preference_timezone(self):
        # 21:30 UTC is 10:30 next day in Auckland (UTC+13 in January)
        pref = _quiet(timezone="Pacific/Auckland")
        assert not in_quiet_hours(pref, _at(21, 30))
        # 12:00 UTC is 01:00 in Auckland
        assert in_quiet_hours(pref, _at(12))

    def test_naive_now_treated_as_utc(self):
        assert in_quiet_hours(_quiet(), datetime(2024, 1, 15, 23, 0))

    def test_routine_alert_suppressed(self):
        decision = PreferenceGate().evaluate(_RECIPIENT, _quiet(), Severity.MEDIUM, _at(23))
        assert decision.permitted == []
        assert decision.in_quiet_hours
        assert decision.suppressed == {c: SuppressionReason.QUIET_HOURS for c in decision.considered}

    def test_high_but_not_immediate_suppressed(self):
        decision = PreferenceGate().evaluate(_RECIPIENT, _quiet(), Severity.HIGH, _at(23), immediate=False)
        assert decision.permitted == []

    def test_emergency_with_override_permitted(self):
        decision = PreferenceGate().evaluate(_RECIPIENT, _quiet(), Severity.CRITICAL, _at(23), immediate=True)
        assert decision.permitted == [Channel.PUSH, Channel.SMS, Channel.EMAIL]
        assert decision.suppressed == {}

    def test_emergency_without_override_suppressed(self):
        pref = _quiet(emergency_override=False)
        decision = PreferenceGate().evaluate(_RECIPIENT, pref, Severity.CRITICAL, _at(23), immediate=True)
        assert decision.permitted == []
        assert set(decision.suppressed.values()) == {SuppressionReason.NO_EMERGENCY_OVERRIDE}

    def test_outside_window_override_irrelevant(self):
        pref = _quiet(emergency_override=False)
        decision = PreferenceGate().evaluate(_RECIPIENT, pref, Severity.LOW, _at(12))
        assert decision.permitted == [Channel.PUSH, Channel.SMS, Channel.EMAIL]


# ---------------------------------------------------------------------------
# 3. Opt-out and defaults
# ---------------------------------------------------------------------------

class TestOptOut:
    def test_incident_alerts_disabled_suppresses_everything(self):
        pref = _make_preference(incident_alerts_enabled=False)
        decision = PreferenceGate().evaluate(_RECIPIENT, pref, Severity.CRITICAL, _at(12), immediate=True)
        assert decision.permitted == []
        assert decision.suppressed == {
            Channel.PUSH: SuppressionReason.INCIDENT_ALERTS_DISABLED,
            Channel.SMS: SuppressionReason.INCIDENT_ALERTS_DISABLED,
            Channel.EMAIL: SuppressionReason.INCIDENT_ALERTS_DISABLED,
        }

    @pytest.mark.asyncio
    async def test_missing_row_falls_back_to_defaults(self):
        store = InMemoryCareStore()
        pref = await load_preference(store, _RECIPIENT)
        assert pref == NotificationPreference.defaults_for("rcp_1", "res_1")

    @pytest.mark.asyncio
    async def test_stored_row_is_used(self):
        store = InMemoryCareStore()
        stored = _make_preference(preferred_channel=Channel.SMS)
        await store.save_preference(stored)
        assert await load_preference(store, _RECIPIENT) == stored

    @pytest.mark.asyncio
    async def test_read_failure_raised_as_resolution_error(self):
        class _DownStore(InMemoryCareStore):
            async def get_preference(self, recipient_id, resident_id):
                raise ConnectionError("database unavailable")

        with pytest.raises(RecipientResolutionError) as exc_info:
            await load_preference(_DownStore(), _RECIPIENT)

        assert exc_info.value.details["recipient_id"] == "rcp_1"
        assert exc_info.value.details["error_type"] == "ConnectionError"
        assert isinstance(exc_info.value.__cause__, ConnectionError)
