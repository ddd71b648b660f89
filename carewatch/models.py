"""
Core data models for the CareWatch escalation pipeline.

An ``Interaction`` is one completed conversational exchange with a
resident.  The classifier scores it into an ``IncidentDetection``; when
that detection is an incident the orchestrator opens an ``AlertEvent``,
resolves the resident's ``Recipient`` list, gates each recipient through
their ``NotificationPreference``, and records one ``DeliveryAttempt`` per
(recipient, channel) try in the delivery ledger.

Models that cross a persistence boundary are frozen: a preference change
or a retry produces a new object, never an in-place mutation.  The only
mutable model is ``AlertEvent``, whose lifecycle state is owned by the
orchestrator's state machine.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, time, timezone
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Severity(str, enum.Enum):
    """Incident severity, ordered ``LOW < MEDIUM < HIGH < CRITICAL``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def is_urgent(self) -> bool:
        """High and critical incidents may bypass quiet hours."""
        return self in (Severity.HIGH, Severity.CRITICAL)


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class IncidentCategory(str, enum.Enum):
    """Closed category vocabulary.  Unknown categories fail validation."""

    FALL = "fall"
    MEDICAL = "medical"
    DISTRESS = "distress"
    CONFUSION = "confusion"
    ABUSE_DISCLOSURE = "abuse-disclosure"
    OTHER = "other"


class Channel(str, enum.Enum):
    """Per-recipient delivery channels."""

    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"


CHANNEL_PRIORITY: tuple[Channel, ...] = (Channel.PUSH, Channel.SMS, Channel.EMAIL)
"""Dispatch order when the preferred channel does not decide it."""


class DeliveryStatus(str, enum.Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"

    @property
    def is_terminal(self) -> bool:
        return self is not DeliveryStatus.QUEUED


class SuppressionReason(str, enum.Enum):
    """Why the preference gate withheld a channel."""

    QUIET_HOURS = "quiet_hours"
    NO_EMERGENCY_OVERRIDE = "no_emergency_override"
    INCIDENT_ALERTS_DISABLED = "incident_alerts_disabled"


class AlertState(str, enum.Enum):
    """Lifecycle of an ``AlertEvent``.

    ``CREATED -> DISPATCHING -> {DELIVERED, DEGRADED, FAILED}``.  The last
    three are terminal.
    """

    CREATED = "created"
    DISPATCHING = "dispatching"
    DELIVERED = "delivered"
    DEGRADED = "degraded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AlertState.DELIVERED, AlertState.DEGRADED, AlertState.FAILED)


class InteractionSource(str, enum.Enum):
    VOICE = "voice"
    TEXT = "text"


class RecipientKind(str, enum.Enum):
    FAMILY = "family"
    STAFF = "staff"


class StaffRole(str, enum.Enum):
    """Organisational roles, declared in notification priority order."""

    FACILITY_DIRECTOR = "facility_director"
    CARE_MANAGER = "care_manager"
    NURSE = "nurse"
    OTHER = "other"


STAFF_ROLE_PRIORITY: dict[StaffRole, int] = {
    role: index for index, role in enumerate(StaffRole)
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Interaction and classification
# ---------------------------------------------------------------------------

class Interaction(BaseModel):
    """One completed exchange with a resident, delivered by the
    conversation collaborator once the exchange has finished."""

    model_config = ConfigDict(frozen=True)

    interaction_id: str = Field(default_factory=_new_id)
    resident_id: str = Field(..., min_length=1)
    org_id: Optional[str] = Field(
        default=None,
        description="Care organisation, absent for residents living at home.",
    )
    resident_name: Optional[str] = Field(
        default=None,
        description="Display name used in alert text.  Never logged.",
    )
    transcript: str = Field(default="")
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: datetime = Field(default_factory=_utcnow)
    source: InteractionSource = Field(default=InteractionSource.VOICE)
    sentiment_score: Optional[float] = Field(
        default=None,
        ge=-1.0,
        le=1.0,
        description="Optional upstream sentiment estimate; strongly negative values raise confidence.",
    )

    @model_validator(mode="after")
    def _ended_after_started(self) -> "Interaction":
        if self.ended_at < self.started_at:
            raise ValueError("ended_at must not precede started_at")
        return self


class IncidentDetection(BaseModel):
    """Classifier output for one transcript.

    ``requires_immediate_alert`` implies ``is_incident`` and a severity of
    ``HIGH`` or ``CRITICAL``; constructing a detection that breaks this
    raises ``ValidationError``.
    """

    model_config = ConfigDict(frozen=True)

    is_incident: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    severity: Severity = Severity.LOW
    categories: frozenset[IncidentCategory] = Field(default_factory=frozenset)
    detected_keywords: list[str] = Field(default_factory=list)
    requires_immediate_alert: bool = False
    suggested_actions: list[str] = Field(default_factory=list)
    classifier_error: Optional[str] = Field(
        default=None,
        description=(
            "Set when scoring faulted and the result was degraded to "
            "'no incident'.  Distinguishes a fault from a resident who is fine."
        ),
    )

    @model_validator(mode="after")
    def _immediate_alert_requires_urgent_incident(self) -> "IncidentDetection":
        if self.requires_immediate_alert and not (
            self.is_incident and self.severity.is_urgent
        ):
            raise ValueError(
                "requires_immediate_alert needs is_incident=True and severity high or critical"
            )
        return self

    @property
    def is_degraded(self) -> bool:
        return self.classifier_error is not None

    @classmethod
    def no_incident(cls, classifier_error: Optional[str] = None) -> "IncidentDetection":
        return cls(classifier_error=classifier_error)


# ---------------------------------------------------------------------------
# Recipients and preferences
# ---------------------------------------------------------------------------

class Recipient(BaseModel):
    """A person who may be notified about a resident."""

    model_config = ConfigDict(frozen=True)

    recipient_id: str = Field(default_factory=_new_id)
    resident_id: str = Field(..., min_length=1)
    kind: RecipientKind
    display_name: str = Field(default="")
    phone: Optional[str] = None
    email: Optional[str] = None
    push_endpoint: Optional[str] = None
    consent_granted: bool = Field(
        default=True,
        description="False once the recipient has withdrawn consent for this resident.",
    )
    linked_at: datetime = Field(
        default_factory=_utcnow,
        description="When the relationship to the resident was established.",
    )


class FamilyContact(Recipient):
    """Next of kin or other family member."""

    kind: Literal[RecipientKind.FAMILY] = RecipientKind.FAMILY
    relationship: str = Field(default="family")
    is_primary_contact: bool = False


class OrganizationStaff(Recipient):
    """Staff member of the resident's care organisation."""

    kind: Literal[RecipientKind.STAFF] = RecipientKind.STAFF
    role: StaffRole = StaffRole.OTHER
    is_active: bool = True


class NotificationPreference(BaseModel):
    """Per (recipient, resident) delivery preferences.

    A closed, versioned record: unknown keys are rejected and every field
    is validated when the record is built, so the gate never interprets
    free-form data at read time.  Quiet hours are local wall-clock times
    in ``timezone``; ``start == end`` means no quiet window.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal[1] = 1
    recipient_id: str = Field(..., min_length=1)
    resident_id: str = Field(..., min_length=1)
    enabled_channels: frozenset[Channel] = Field(
        default_factory=lambda: frozenset({Channel.PUSH}),
    )
    preferred_channel: Channel = Channel.PUSH
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    timezone: str = Field(default="UTC")
    emergency_override: bool = Field(
        default=True,
        description="Let immediate high/critical alerts through during quiet hours.",
    )
    incident_alerts_enabled: bool = Field(
        default=True,
        description="False opts the recipient out of incident alerts entirely.",
    )

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone '{v}'") from exc
        return v

    @model_validator(mode="after")
    def _consistent(self) -> "NotificationPreference":
        if (self.quiet_hours_start is None) != (self.quiet_hours_end is None):
            raise ValueError("quiet_hours_start and quiet_hours_end must be set together")
        if self.enabled_channels and self.preferred_channel not in self.enabled_channels:
            raise ValueError(
                f"preferred_channel '{self.preferred_channel.value}' is not an enabled channel"
            )
        return self

    @property
    def has_quiet_hours(self) -> bool:
        return (
            self.quiet_hours_start is not None
            and self.quiet_hours_end is not None
            and self.quiet_hours_start != self.quiet_hours_end
        )

    @classmethod
    def defaults_for(cls, recipient_id: str, resident_id: str) -> "NotificationPreference":
        """Preferences created when a relationship is first established."""
        return cls(recipient_id=recipient_id, resident_id=resident_id)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class RenderedMessage(BaseModel):
    """Channel renderings of one alert.  Every channel draws from the same
    alert so the content stays consistent across SMS, push, and email."""

    model_config = ConfigDict(frozen=True)

    title: str
    short_text: str
    email_subject: str
    email_html: str
    email_text: str


class DeliveryOutcome(BaseModel):
    """Normalised result of one ``ChannelDispatcher.send`` call."""

    model_config = ConfigDict(frozen=True)

    status: DeliveryStatus
    provider_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    transport_called: bool = True

    @classmethod
    def sent(cls, provider_id: Optional[str]) -> "DeliveryOutcome":
        return cls(status=DeliveryStatus.SENT, provider_id=provider_id)

    @classmethod
    def failed(
        cls,
        error: str,
        retryable: bool,
        transport_called: bool = True,
    ) -> "DeliveryOutcome":
        return cls(
            status=DeliveryStatus.FAILED,
            error=error,
            retryable=retryable,
            transport_called=transport_called,
        )


class DeliveryAttempt(BaseModel):
    """One ledger row: a single try on one channel for one recipient.

    Rows are written once, at terminal status.  A retry is a new row with
    the next ``attempt_number``.
    """

    model_config = ConfigDict(frozen=True)

    attempt_id: str = Field(default_factory=_new_id)
    alert_id: str
    org_id: Optional[str] = None
    resident_id: str
    recipient_id: str
    recipient_kind: RecipientKind
    channel: Channel
    attempt_number: int = Field(default=1, ge=1)
    status: DeliveryStatus
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    suppression_reason: Optional[SuppressionReason] = None
    retryable: bool = False
    recorded_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str, Channel]:
        return (self.alert_id, self.recipient_id, self.channel)


class AlertEvent(BaseModel):
    """The unit of work the orchestrator carries from detection to a
    terminal delivery state."""

    alert_id: str = Field(default_factory=_new_id)
    interaction_id: str
    resident_id: str
    org_id: Optional[str] = None
    detection: IncidentDetection
    recipient_ids: list[str] = Field(default_factory=list)
    state: AlertState = AlertState.CREATED
    created_at: datetime = Field(default_factory=_utcnow)
    dispatch_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    fallback_invoked: bool = False
    fallback_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal
