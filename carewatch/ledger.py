"""
Delivery Ledger -- Append-Only Record of Every Notification Attempt.

Every (recipient, channel) pair the preference gate considered for an
alert ends up here, whether it was sent, failed, or suppressed.  The
ledger is the source of truth for "who was told, how, and when".

**Write contract:**

* Rows are written once, at a terminal status (``sent``, ``failed``,
  ``suppressed``).  ``queued`` rows are rejected.
* A retry is a new row whose ``attempt_number`` is one more than the
  latest row for the same (alert, recipient, channel).  Re-using a number
  raises ``DuplicateAttemptError``; skipping one raises ``LedgerError``.
* There is no update or delete.

Rows are chained with SHA-256 exactly like the audit log, so
``verify_chain()`` detects any after-the-fact edit.

Appends are synchronous and single-step, which makes each one atomic
with respect to the event loop.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from carewatch.audit import redact_text
from carewatch.errors import DuplicateAttemptError, LedgerError
from carewatch.models import Channel, DeliveryAttempt, DeliveryStatus


class LedgerRecord(BaseModel):
    """A stored attempt plus its link in the hash chain."""

    sequence: int = Field(..., ge=0)
    attempt: DeliveryAttempt
    previous_hash: str = ""

    def canonical_bytes(self) -> bytes:
        data = {
            "sequence": self.sequence,
            "attempt": self.attempt.model_dump(mode="json"),
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class DeliveryLedger:
    """In-process delivery ledger with hash chaining."""

    def __init__(self) -> None:
        self._records: list[LedgerRecord] = []
        self._hashes: list[str] = []
        self._latest: dict[tuple[str, str, Channel], DeliveryAttempt] = {}

    def append(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Record one terminal attempt.

        Raises:
            LedgerError: If the row is not terminal, or its attempt number
                skips ahead of the latest row for the same triple.
            DuplicateAttemptError: If the attempt number was already used.
        """
        if not attempt.status.is_terminal:
            raise LedgerError(
                f"Only terminal attempts are recorded, got '{attempt.status.value}'",
                details={"alert_id": attempt.alert_id, "channel": attempt.channel.value},
            )

        previous = self._latest.get(attempt.key)
        expected = previous.attempt_number + 1 if previous else 1
        if attempt.attempt_number < expected:
            raise DuplicateAttemptError(
                f"Attempt {attempt.attempt_number} already recorded for "
                f"{attempt.channel.value} to recipient '{attempt.recipient_id}'",
                details={"alert_id": attempt.alert_id, "attempt_number": attempt.attempt_number},
            )
        if attempt.attempt_number > expected:
            raise LedgerError(
                f"Attempt {attempt.attempt_number} skips ahead; expected {expected}",
                details={"alert_id": attempt.alert_id, "attempt_number": attempt.attempt_number},
            )

        record = LedgerRecord(
            sequence=len(self._records),
            attempt=attempt,
            previous_hash=self._hashes[-1] if self._hashes else "",
        )
        self._records.append(record)
        self._hashes.append(record.compute_hash())
        self._latest[attempt.key] = attempt
        return attempt

    # -- queries --

    def attempts_for_alert(self, alert_id: str) -> list[DeliveryAttempt]:
        """Every row for the alert, in write order."""
        return [r.attempt for r in self._records if r.attempt.alert_id == alert_id]

    def latest_attempt(
        self, alert_id: str, recipient_id: str, channel: Channel
    ) -> Optional[DeliveryAttempt]:
        return self._latest.get((alert_id, recipient_id, channel))

    def final_attempts(self, alert_id: str) -> list[DeliveryAttempt]:
        """The latest row per (recipient, channel), in first-write order."""
        seen: dict[tuple[str, str, Channel], None] = {}
        for record in self._records:
            if record.attempt.alert_id == alert_id:
                seen.setdefault(record.attempt.key, None)
        return [self._latest[key] for key in seen]

    def query(
        self,
        alert_id: Optional[str] = None,
        org_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
        recipient_id: Optional[str] = None,
        channel: Optional[Channel] = None,
    ) -> list[DeliveryAttempt]:
        results = []
        for record in self._records:
            attempt = record.attempt
            if alert_id is not None and attempt.alert_id != alert_id:
                continue
            if org_id is not None and attempt.org_id != org_id:
                continue
            if status is not None and attempt.status != status:
                continue
            if recipient_id is not None and attempt.recipient_id != recipient_id:
                continue
            if channel is not None and attempt.channel != channel:
                continue
            results.append(attempt)
        return results

    # -- integrity --

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Validate every hash link.  Returns ``(valid, broken_at)``."""
        for i, record in enumerate(self._records):
            expected_prev = self._records[i - 1].compute_hash() if i else ""
            if record.previous_hash != expected_prev:
                return (False, i)
            if self._hashes[i] != record.compute_hash():
                return (False, i)
        return (True, None)

    def export_for_review(self, org_id: Optional[str], alert_id: Optional[str] = None) -> dict[str, Any]:
        """Rows for one organisation (None for home residents), redacted.

        Error messages from providers can echo an address back, so they
        pass through the same redaction as audit metadata.
        """
        rows = []
        for attempt in self.query(alert_id=alert_id):
            if attempt.org_id != org_id:
                continue
            row = attempt.model_dump(mode="json")
            if row["error_message"]:
                row["error_message"] = redact_text(row["error_message"])
            rows.append(row)

        chain_valid, broken_at = self.verify_chain()
        return {
            "export_metadata": {
                "org_id": org_id,
                "alert_id": alert_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "row_count": len(rows),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "attempts": rows,
        }

    def __len__(self) -> int:
        return len(self._records)
