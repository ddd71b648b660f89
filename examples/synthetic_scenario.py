"""
Synthetic Scenario: Care-Home Incident Escalation Walkthrough
=============================================================

This script runs the CareWatch escalation pipeline end to end on
synthetic data, with in-memory transports standing in for Twilio, the
push gateway, Resend, and the on-call webhook.  No real resident or
contact data is used.

Steps demonstrated:
  1. Load pipeline settings from YAML
  2. Link family and staff recipients to a synthetic resident
  3. Process a benign interaction (no alert)
  4. Process a fall during the daughter's quiet hours
  5. Retry a flaky SMS provider with backoff
  6. Generate a delivery report for the alert
  7. Process a disclosure for a resident with nobody linked (fallback)
  8. Export the delivery ledger and audit log for review

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime, time, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carewatch.config import DEFAULT_SETTINGS, load_settings_from_yaml
from carewatch.errors import ConfigurationError
from carewatch.fallback import RecordingPager
from carewatch.models import (
    Channel,
    FamilyContact,
    Interaction,
    NotificationPreference,
    OrganizationStaff,
    StaffRole,
)
from carewatch.report import generate_delivery_report
from carewatch.runtime import build_pipeline
from carewatch.transports import (
    RecordingEmailTransport,
    RecordingPushTransport,
    RecordingSmsTransport,
)

ORG_ID = "org_synthetic_meadows"
RESIDENT_ID = "res_synthetic_001"
# 23:30 UTC is 00:30 BST, inside the daughter's quiet window.
NOW = datetime(2024, 7, 1, 23, 30, tzinfo=timezone.utc)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


async def _no_wait(seconds: float) -> None:
    print(f"  (backing off {seconds:g}s)")


async def main() -> None:
    _banner("CareWatch Synthetic Scenario: Care-Home Incident Escalation")
    print("All data in this demo is entirely synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Pipeline Settings")

    settings_path = Path(__file__).parent / "pipeline_settings.yaml"
    try:
        settings = load_settings_from_yaml(settings_path)
        print(f"Loaded settings from {settings_path.name}")
    except ConfigurationError as exc:
        settings = DEFAULT_SETTINGS
        print(f"Using default settings ({exc.message})")
    print(f"  Retry budget: {settings.retry.max_attempts} attempts")
    print(f"  Routine concurrency: {settings.dispatch.routine_max_concurrency}")

    sms = RecordingSmsTransport()
    push = RecordingPushTransport()
    email = RecordingEmailTransport()
    pager = RecordingPager()

    async with build_pipeline(
        settings=settings,
        sms=sms,
        push=push,
        email=email,
        fallback=pager,
        sleep=_no_wait,
        clock=lambda: NOW,
    ) as pipeline:
        # --------------------------------------------------------------
        # Step 2: Link recipients
        # --------------------------------------------------------------
        _banner("Step 2: Link Recipients")

        daughter = FamilyContact(
            recipient_id="rcp_daughter",
            resident_id=RESIDENT_ID,
            display_name="Synthetic Daughter",
            relationship="daughter",
            is_primary_contact=True,
            phone="07700 900001",
            email="daughter@example.com",
            push_endpoint="https://push.example.com/sub/daughter",
        )
        pipeline.store.add_recipient(daughter, NotificationPreference(
            recipient_id=daughter.recipient_id,
            resident_id=RESIDENT_ID,
            enabled_channels=frozenset({Channel.PUSH, Channel.SMS}),
            preferred_channel=Channel.SMS,
            quiet_hours_start=time(22, 0),
            quiet_hours_end=time(7, 0),
            timezone="Europe/London",
            emergency_override=True,
        ))
        manager = OrganizationStaff(
            recipient_id="rcp_manager",
            resident_id=RESIDENT_ID,
            display_name="Synthetic Care Manager",
            role=StaffRole.CARE_MANAGER,
            phone="+44 7700 900002",
            email="manager@meadows.example.com",
        )
        pipeline.store.add_recipient(manager, NotificationPreference(
            recipient_id=manager.recipient_id,
            resident_id=RESIDENT_ID,
            enabled_channels=frozenset({Channel.SMS, Channel.EMAIL}),
            preferred_channel=Channel.EMAIL,
        ))
        print(f"Linked {daughter.recipient_id} (push, sms; quiet 22:00-07:00 Europe/London)")
        print(f"Linked {manager.recipient_id} (email, sms)")

        # --------------------------------------------------------------
        # Step 3: Benign interaction
        # --------------------------------------------------------------
        _banner("Step 3: Benign Interaction")

        result = await pipeline.orchestrator.on_interaction_completed(Interaction(
            interaction_id="int_001",
            resident_id=RESIDENT_ID,
            org_id=ORG_ID,
            transcript="We talked about the roses in the garden and her grandson's visit.",
        ))
        print(f"Alert opened: {result is not None}")

        # --------------------------------------------------------------
        # Step 4 and 5: Fall at night, flaky SMS provider
        # --------------------------------------------------------------
        _banner("Step 4: Fall During Quiet Hours (SMS provider flaky)")

        sms.fail_next(1)
        alert = await pipeline.orchestrator.on_interaction_completed(Interaction(
            interaction_id="int_002",
            resident_id=RESIDENT_ID,
            org_id=ORG_ID,
            resident_name="Synthetic Resident",
            transcript="I fell by the bed and I can't get up",
        ))
        print(f"Alert {alert.alert_id}")
        print(f"  Severity: {alert.detection.severity.value}")
        print(f"  Immediate: {alert.detection.requires_immediate_alert}")
        print(f"  Final state: {alert.state.value}")
        for attempt in pipeline.ledger.attempts_for_alert(alert.alert_id):
            print(
                f"  {attempt.recipient_id:<14} {attempt.channel.value:<6} "
                f"try {attempt.attempt_number}: {attempt.status.value}"
            )

        # --------------------------------------------------------------
        # Step 6: Delivery report
        # --------------------------------------------------------------
        _banner("Step 6: Delivery Report")
        report = generate_delivery_report(alert, pipeline.ledger)
        print(json.dumps(report.to_dict(), indent=2, default=str))

        # --------------------------------------------------------------
        # Step 7: Nobody linked
        # --------------------------------------------------------------
        _banner("Step 7: Disclosure With No Linked Recipients")

        orphan = await pipeline.orchestrator.on_interaction_completed(Interaction(
            interaction_id="int_003",
            resident_id="res_synthetic_002",
            org_id=ORG_ID,
            transcript="I am scared, the night carer abused me again",
        ))
        print(f"Final state: {orphan.state.value}")
        print(f"Fallback paged: {orphan.fallback_invoked} ({orphan.fallback_reason})")
        print(f"Pages recorded: {len(pager.pages)}")

        # --------------------------------------------------------------
        # Step 8: Exports
        # --------------------------------------------------------------
        _banner("Step 8: Ledger and Audit Export")

        ledger_export = pipeline.ledger.export_for_review(ORG_ID)
        print(f"Ledger rows for {ORG_ID}: {ledger_export['export_metadata']['row_count']}")
        print(f"Ledger chain: {ledger_export['export_metadata']['chain_integrity']}")

        audit_export = pipeline.audit_log.export_for_review(ORG_ID)
        print(f"Audit entries for {ORG_ID}: {audit_export['export_metadata']['entry_count']}")
        print(f"Audit chain: {audit_export['export_metadata']['chain_integrity']}")

    _banner("Scenario Complete")


if __name__ == "__main__":
    asyncio.run(main())
