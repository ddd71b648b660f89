"""
Persistence collaborator interfaces and an in-memory implementation.

The pipeline never talks to a database directly.  It depends on three
narrow repositories:

* ``RecipientRepository`` -- recipients linked to a resident.
* ``PreferenceRepository`` -- one ``NotificationPreference`` per
  (recipient, resident) pair.
* ``AlertRepository`` -- ``AlertEvent`` records, including the atomic
  "create unless one exists for this interaction" used for idempotency.

``InMemoryCareStore`` implements all three for tests, the example
walkthrough, and single-process deployments.  Like the policy registry
it hands out deep copies, so callers cannot mutate stored state without
going through ``save``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from carewatch.models import AlertEvent, NotificationPreference, Recipient


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class RecipientRepository(ABC):
    @abstractmethod
    async def list_recipients(self, resident_id: str) -> list[Recipient]:
        """Every recipient linked to the resident, consent withdrawn or not.

        Raises:
            RecipientResolutionError: If the backing store is unavailable.
        """


class PreferenceRepository(ABC):
    @abstractmethod
    async def get_preference(
        self, recipient_id: str, resident_id: str
    ) -> Optional[NotificationPreference]:
        """The stored preference row, or None if none was ever written."""

    @abstractmethod
    async def save_preference(self, preference: NotificationPreference) -> None:
        """Insert or replace the row for (recipient, resident)."""


class AlertRepository(ABC):
    @abstractmethod
    async def get(self, alert_id: str) -> Optional[AlertEvent]:
        ...

    @abstractmethod
    async def get_by_interaction(self, interaction_id: str) -> Optional[AlertEvent]:
        ...

    @abstractmethod
    async def create_if_absent(self, alert: AlertEvent) -> tuple[AlertEvent, bool]:
        """Atomically insert ``alert`` unless one exists for its interaction.

        Returns:
            ``(stored_alert, created)``.  When ``created`` is False the
            returned alert is the pre-existing one.
        """

    @abstractmethod
    async def save(self, alert: AlertEvent) -> None:
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryCareStore(RecipientRepository, PreferenceRepository, AlertRepository):
    """Single-process store backing all three repositories."""

    def __init__(self) -> None:
        self._recipients: dict[str, list[Recipient]] = {}
        self._preferences: dict[tuple[str, str], NotificationPreference] = {}
        self._alerts: dict[str, AlertEvent] = {}
        self._alert_by_interaction: dict[str, str] = {}

    # -- recipients --

    def add_recipient(
        self,
        recipient: Recipient,
        preference: Optional[NotificationPreference] = None,
    ) -> None:
        """Link a recipient to their resident and create their preferences.

        When ``preference`` is omitted the relationship starts with
        ``NotificationPreference.defaults_for``.
        """
        pref = preference or NotificationPreference.defaults_for(
            recipient.recipient_id, recipient.resident_id
        )
        if (pref.recipient_id, pref.resident_id) != (recipient.recipient_id, recipient.resident_id):
            raise ValueError("preference does not belong to this recipient/resident pair")
        self._recipients.setdefault(recipient.resident_id, []).append(recipient)
        self._preferences[(pref.recipient_id, pref.resident_id)] = pref

    def withdraw_consent(self, recipient_id: str, resident_id: str) -> None:
        linked = self._recipients.get(resident_id, [])
        for index, recipient in enumerate(linked):
            if recipient.recipient_id == recipient_id:
                linked[index] = recipient.model_copy(update={"consent_granted": False})
                return
        raise KeyError(f"No recipient '{recipient_id}' linked to resident '{resident_id}'")

    async def list_recipients(self, resident_id: str) -> list[Recipient]:
        return list(self._recipients.get(resident_id, []))

    # -- preferences --

    async def get_preference(
        self, recipient_id: str, resident_id: str
    ) -> Optional[NotificationPreference]:
        return self._preferences.get((recipient_id, resident_id))

    async def save_preference(self, preference: NotificationPreference) -> None:
        self._preferences[(preference.recipient_id, preference.resident_id)] = preference

    # -- alerts --

    async def get(self, alert_id: str) -> Optional[AlertEvent]:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    async def get_by_interaction(self, interaction_id: str) -> Optional[AlertEvent]:
        alert_id = self._alert_by_interaction.get(interaction_id)
        return await self.get(alert_id) if alert_id else None

    async def create_if_absent(self, alert: AlertEvent) -> tuple[AlertEvent, bool]:
        # No await between the check and the insert: atomic under the event loop.
        existing_id = self._alert_by_interaction.get(alert.interaction_id)
        if existing_id is not None:
            return self._alerts[existing_id].model_copy(deep=True), False
        self._alerts[alert.alert_id] = alert.model_copy(deep=True)
        self._alert_by_interaction[alert.interaction_id] = alert.alert_id
        return alert.model_copy(deep=True), True

    async def save(self, alert: AlertEvent) -> None:
        if alert.alert_id not in self._alerts:
            raise KeyError(f"Unknown alert '{alert.alert_id}'; use create_if_absent() first")
        self._alerts[alert.alert_id] = alert.model_copy(deep=True)

    def alerts(self) -> list[AlertEvent]:
        return [a.model_copy(deep=True) for a in self._alerts.values()]
