"""
Append-Only, Tamper-Evident Pipeline Audit Log (Hash-Chained).

Every decision the orchestrator takes that is not itself a delivery --
opening an alert, moving it between states, rejecting a duplicate
interaction, a classifier fault, a resolution retry, a resident with no
one to tell, and every use of the operational fallback -- is recorded as
a structured audit entry.  Deliveries live in the ``DeliveryLedger``; the
two logs together explain every alert end to end.

Entries are linked by a SHA-256 hash chain: each stores the hash of the
previous entry's canonical form, so editing any entry after the fact is
detected by ``verify_chain()``.  The chain gives structural tamper
evidence only; durable deployments put the log on write-once storage.

**Tenant scoping:** queries and exports are always scoped by ``org_id``.
Residents who live at home have no organisation; their entries are
filed under the empty string.

**Redaction:** ``export_for_review`` strips contact details (phone
numbers, email addresses, names, push endpoints) and transcript text
from metadata before anything leaves the process.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    # Alert lifecycle
    ALERT_CREATED = "ALERT_CREATED"
    ALERT_STATE_CHANGED = "ALERT_STATE_CHANGED"
    DUPLICATE_INTERACTION = "DUPLICATE_INTERACTION"

    # Pipeline faults
    CLASSIFIER_FAULT = "CLASSIFIER_FAULT"
    RESOLUTION_RETRY = "RESOLUTION_RETRY"
    NO_RECIPIENTS = "NO_RECIPIENTS"

    # Operational fallback
    FALLBACK_INVOKED = "FALLBACK_INVOKED"
    FALLBACK_FAILED = "FALLBACK_FAILED"

    # Audit operations
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


SYSTEM_ACTOR = "carewatch-pipeline"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry with its hash link to the previous one."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    org_id: str = Field(
        default="",
        description="Care organisation; empty for residents living at home.",
    )
    actor_id: str = Field(default=SYSTEM_ACTOR)
    event_type: AuditEventType
    alert_id: Optional[str] = None
    resident_id: Optional[str] = None
    target_entity: str = Field(
        default="",
        description="Identifier of the thing acted on (interaction id, recipient id).",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry; empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte form used for hashing (sorted-key JSON)."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "org_id": self.org_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "alert_id": self.alert_id,
            "resident_id": self.resident_id,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Contact-detail redaction
# ---------------------------------------------------------------------------

_CONTACT_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "url": re.compile(r"\bhttps?://\S+"),
    # Not preceded or followed by word chars or hyphens, so UUID segments survive.
    "phone": re.compile(r"(?<![\w-])\+?\d[\d\s().-]{7,}\d(?![\w-])"),
}

_CONTACT_KEYS = {
    "name", "display_name", "resident_name", "email", "phone", "to",
    "address", "push_endpoint", "endpoint", "transcript",
}


def redact_contact_details(metadata: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``metadata`` with contact details replaced.

    Known contact keys are replaced wholesale with ``[REDACTED]``; phone
    numbers, email addresses, and URLs inside other string values become
    ``[REDACTED-PHONE]`` and so on.  Nested dicts and lists are walked.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _CONTACT_KEYS:
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = _redact_value(value)
    return redacted


def redact_text(text: str) -> str:
    for pattern_name, pattern in _CONTACT_PATTERNS.items():
        text = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", text)
    return text


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_contact_details(value)
    if isinstance(value, list):
        return [_redact_value(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There is no ``update()`` or ``delete()``.  ``record()`` is the usual
    entry point; ``append()`` accepts a prebuilt entry.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Link ``entry`` to the current head of the chain and store it."""
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        org_id: Optional[str] = None,
        alert_id: Optional[str] = None,
        resident_id: Optional[str] = None,
        target_entity: str = "",
        **metadata: Any,
    ) -> AuditEntry:
        return self.append(AuditEntry(
            org_id=org_id or "",
            event_type=event_type,
            alert_id=alert_id,
            resident_id=resident_id,
            target_entity=target_entity,
            metadata=metadata,
        ))

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)``; ``broken_at`` is the index of the first
            broken link, or None when the chain is intact.
        """
        for i, entry in enumerate(self._entries):
            expected_prev = self._entries[i - 1].compute_hash() if i else ""
            if entry.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        org_id: str,
        event_type: Optional[AuditEventType] = None,
        alert_id: Optional[str] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AuditEntry]:
        """Entries for one organisation, optionally filtered.  Returns copies."""
        results = []
        for entry in self._entries:
            if entry.org_id != org_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if alert_id is not None and entry.alert_id != alert_id:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def for_alert(self, alert_id: str) -> list[AuditEntry]:
        return [e.model_copy(deep=True) for e in self._entries if e.alert_id == alert_id]

    def export_for_review(
        self,
        org_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """JSON-serialisable export bundle with contact details redacted.

        The export itself is audited as ``AUDIT_EXPORTED``.
        """
        entries = self.query(org_id, time_start=time_start, time_end=time_end)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_contact_details(entry.metadata)
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        self.record(
            AuditEventType.AUDIT_EXPORTED,
            org_id=org_id,
            entry_count=len(redacted_entries),
        )

        return {
            "export_metadata": {
                "org_id": org_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
