"""
CareWatch Incident Escalation Pipeline
======================================

Scores completed resident interactions for incident risk and, when an
incident is detected, fans notifications out to family contacts and
care-facility staff over push, SMS, and email.  Delivery is gated by
each recipient's consent, channel preferences, and quiet hours, and every
attempt (sent, failed, or suppressed) is written to an append-only,
hash-chained delivery ledger for compliance review.

Critical incidents that cannot reach any recipient are escalated to an
operational fallback channel so that no resident safety event is dropped
silently.
"""

__version__ = "0.1.0"
