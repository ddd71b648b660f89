"""
Delivery Report Generator.

Builds a structured summary of one alert for compliance reviewers: what
was detected, who was notified and how, what was held back by
preferences, what failed, and whether on-call had to be paged.  The
report is assembled from the ``AlertEvent`` and its ledger rows only, so
it always agrees with the ledger.

Contact details never appear in a report.  Recipients are identified by
id and kind, and provider error text is redacted.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any

from carewatch.audit import redact_text
from carewatch.ledger import DeliveryLedger
from carewatch.models import AlertEvent, AlertState, DeliveryAttempt, DeliveryStatus


class DeliveryReport:
    """Reviewer-facing summary of a single alert."""

    def __init__(
        self,
        alert_id: str,
        resident_id: str,
        org_id: str | None,
        state: str,
        severity: str,
        categories: list[str],
        detected_keywords: list[str],
        requires_immediate_alert: bool,
        status_counts: dict[str, int],
        recipients_notified: int,
        recipients: list[dict[str, Any]],
        timeline: list[dict[str, str]],
        fallback_invoked: bool,
        fallback_reason: str | None,
        generated_at: str,
    ) -> None:
        self.alert_id = alert_id
        self.resident_id = resident_id
        self.org_id = org_id
        self.state = state
        self.severity = severity
        self.categories = categories
        self.detected_keywords = detected_keywords
        self.requires_immediate_alert = requires_immediate_alert
        self.status_counts = status_counts
        self.recipients_notified = recipients_notified
        self.recipients = recipients
        self.timeline = timeline
        self.fallback_invoked = fallback_invoked
        self.fallback_reason = fallback_reason
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Incident Delivery Report",
            "alert_id": self.alert_id,
            "resident_id": self.resident_id,
            "org_id": self.org_id,
            "state": self.state,
            "severity": self.severity,
            "categories": self.categories,
            "detected_keywords": self.detected_keywords,
            "requires_immediate_alert": self.requires_immediate_alert,
            "status_counts": self.status_counts,
            "recipients_notified": self.recipients_notified,
            "recipients": self.recipients,
            "timeline": self.timeline,
            "fallback_invoked": self.fallback_invoked,
            "fallback_reason": self.fallback_reason,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"DeliveryReport(alert_id={self.alert_id}, state={self.state}, "
            f"notified={self.recipients_notified})"
        )


def generate_delivery_report(alert: AlertEvent, ledger: DeliveryLedger) -> DeliveryReport:
    """Summarise ``alert`` and its ledger rows.

    ``status_counts`` counts the final row of each (recipient, channel)
    pair, so a send that succeeded on its second try counts once, as
    sent.  Every try is still listed under its recipient.
    """
    attempts = ledger.attempts_for_alert(alert.alert_id)
    final = ledger.final_attempts(alert.alert_id)
    counts = Counter(a.status for a in final)
    notified = {a.recipient_id for a in final if a.status is DeliveryStatus.SENT}
    detection = alert.detection

    return DeliveryReport(
        alert_id=alert.alert_id,
        resident_id=alert.resident_id,
        org_id=alert.org_id,
        state=alert.state.value,
        severity=detection.severity.value,
        categories=sorted(c.value for c in detection.categories),
        detected_keywords=list(detection.detected_keywords),
        requires_immediate_alert=detection.requires_immediate_alert,
        status_counts={
            status.value: counts[status]
            for status in (DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.SUPPRESSED)
        },
        recipients_notified=len(notified),
        recipients=_recipient_timelines(attempts),
        timeline=_build_timeline(alert),
        fallback_invoked=alert.fallback_invoked,
        fallback_reason=alert.fallback_reason,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _recipient_timelines(attempts: list[DeliveryAttempt]) -> list[dict[str, Any]]:
    grouped: dict[str, dict[str, Any]] = {}
    for attempt in attempts:
        entry = grouped.setdefault(attempt.recipient_id, {
            "recipient_id": attempt.recipient_id,
            "recipient_kind": attempt.recipient_kind.value,
            "attempts": [],
        })
        row: dict[str, Any] = {
            "channel": attempt.channel.value,
            "attempt_number": attempt.attempt_number,
            "status": attempt.status.value,
            "recorded_at": attempt.recorded_at.isoformat(),
        }
        if attempt.suppression_reason is not None:
            row["suppression_reason"] = attempt.suppression_reason.value
        if attempt.error_message:
            row["error"] = redact_text(attempt.error_message)
        entry["attempts"].append(row)
    return list(grouped.values())


def _build_timeline(alert: AlertEvent) -> list[dict[str, str]]:
    events: list[dict[str, str]] = [{
        "state": AlertState.CREATED.value,
        "timestamp": alert.created_at.isoformat(),
        "description": "Incident detected and alert opened.",
    }]
    if alert.dispatch_started_at:
        events.append({
            "state": AlertState.DISPATCHING.value,
            "timestamp": alert.dispatch_started_at.isoformat(),
            "description": f"Dispatch started to {len(alert.recipient_ids)} recipient(s).",
        })
    if alert.completed_at:
        events.append({
            "state": alert.state.value,
            "timestamp": alert.completed_at.isoformat(),
            "description": _COMPLETION_TEXT.get(alert.state, "Alert completed."),
        })
    if alert.fallback_invoked:
        events.append({
            "state": "fallback",
            "timestamp": (alert.completed_at or alert.created_at).isoformat(),
            "description": f"Operational fallback paged ({alert.fallback_reason}).",
        })
    return events


_COMPLETION_TEXT = {
    AlertState.DELIVERED: "Every attempted delivery succeeded.",
    AlertState.DEGRADED: "Some deliveries succeeded and some failed.",
    AlertState.FAILED: "No notification was delivered.",
}
