"""
Tests for carewatch.store -- in-memory persistence collaborators.

Covers: idempotent alert creation, returned copies, preference defaults
on linking, consent withdrawal, and saving unknown alerts.
"""

from __future__ import annotations

import pytest

from carewatch.models import (
    AlertEvent,
    AlertState,
    Channel,
    FamilyContact,
    IncidentDetection,
    NotificationPreference,
)
from carewatch.store import InMemoryCareStore


def _make_alert(interaction_id: str = "int_1") -> AlertEvent:
    return AlertEvent(
        interaction_id=interaction_id,
        resident_id="res_1",
        detection=IncidentDetection(is_incident=True, confidence=0.5),
    )


def _make_contact(recipient_id: str = "rcp_1") -> FamilyContact:
    return FamilyContact(recipient_id=recipient_id, resident_id="res_1")


class TestAlerts:
    @pytest.mark.asyncio
    async def test_create_if_absent(self):
        store = InMemoryCareStore()
        first, created = await store.create_if_absent(_make_alert())
        again, created_again = await store.create_if_absent(_make_alert())

        assert created
        assert not created_again
        assert again.alert_id == first.alert_id
        assert (await store.get_by_interaction("int_1")).alert_id == first.alert_id

    @pytest.mark.asyncio
    async def test_returned_alerts_are_copies(self):
        store = InMemoryCareStore()
        alert, _ = await store.create_if_absent(_make_alert())
        alert.state = AlertState.DISPATCHING

        assert (await store.get(alert.alert_id)).state is AlertState.CREATED
        await store.save(alert)
        assert (await store.get(alert.alert_id)).state is AlertState.DISPATCHING

    @pytest.mark.asyncio
    async def test_save_unknown_alert(self):
        with pytest.raises(KeyError):
            await InMemoryCareStore().save(_make_alert())

    @pytest.mark.asyncio
    async def test_missing_lookups(self):
        store = InMemoryCareStore()
        assert await store.get("nope") is None
        assert await store.get_by_interaction("nope") is None


class TestRecipients:
    @pytest.mark.asyncio
    async def test_linking_creates_default_preference(self):
        store = InMemoryCareStore()
        store.add_recipient(_make_contact())

        pref = await store.get_preference("rcp_1", "res_1")
        assert pref == NotificationPreference.defaults_for("rcp_1", "res_1")
        assert [r.recipient_id for r in await store.list_recipients("res_1")] == ["rcp_1"]

    def test_mismatched_preference_rejected(self):
        store = InMemoryCareStore()
        other = NotificationPreference(recipient_id="rcp_2", resident_id="res_1")
        with pytest.raises(ValueError):
            store.add_recipient(_make_contact(), other)

    @pytest.mark.asyncio
    async def test_mismatched_preference_links_nothing(self):
        store = InMemoryCareStore()
        with pytest.raises(ValueError):
            store.add_recipient(_make_contact(), NotificationPreference(recipient_id="x", resident_id="res_1"))
        assert await store.list_recipients("res_1") == []

    @pytest.mark.asyncio
    async def test_withdraw_consent(self):
        store = InMemoryCareStore()
        store.add_recipient(_make_contact())
        store.withdraw_consent("rcp_1", "res_1")

        (recipient,) = await store.list_recipients("res_1")
        assert isinstance(recipient, FamilyContact)
        assert not recipient.consent_granted

    def test_withdraw_unknown(self):
        with pytest.raises(KeyError):
            InMemoryCareStore().withdraw_consent("rcp_1", "res_1")

    @pytest.mark.asyncio
    async def test_save_preference_replaces(self):
        store = InMemoryCareStore()
        store.add_recipient(_make_contact())
        updated = NotificationPreference(
            recipient_id="rcp_1",
            resident_id="res_1",
            enabled_channels=frozenset({Channel.SMS}),
            preferred_channel=Channel.SMS,
        )
        await store.save_preference(updated)
        assert (await store.get_preference("rcp_1", "res_1")).enabled_channels == frozenset({Channel.SMS})
