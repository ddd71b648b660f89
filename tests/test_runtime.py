"""
Tests for carewatch.runtime -- pipeline wiring and lifecycle.
"""

from __future__ import annotations

import pytest

from carewatch.fallback import RecordingPager, WebhookPager
from carewatch.models import AlertState, FamilyContact, Interaction
from carewatch.runtime import build_pipeline
from carewatch.transports import (
    RecordingEmailTransport,
    RecordingPushTransport,
    RecordingSmsTransport,
    ResendEmailTransport,
    TwilioSmsTransport,
    WebPushGatewayTransport,
)


def _recording() -> dict:
    return {
        "sms": RecordingSmsTransport(),
        "push": RecordingPushTransport(),
        "email": RecordingEmailTransport(),
        "fallback": RecordingPager(),
    }


class TestBuildPipeline:
    @pytest.mark.asyncio
    async def test_runs_in_memory_and_closes_everything(self):
        parts = _recording()
        async with build_pipeline(**parts) as pipeline:
            pipeline.store.add_recipient(FamilyContact(
                recipient_id="rcp_1",
                resident_id="res_1",
                push_endpoint="https://push.example.com/sub/1",
                is_primary_contact=True,
            ))
            alert = await pipeline.orchestrator.on_interaction_completed(
                Interaction(interaction_id="int_1", resident_id="res_1", transcript="I fell and I can't get up")
            )
            assert alert.state is AlertState.DELIVERED
            assert len(pipeline.ledger) == 1
            assert len(parts["push"].sent) == 1

        assert all(part.closed for part in parts.values())

    @pytest.mark.asyncio
    async def test_exit_drains_submitted_work(self):
        parts = _recording()
        async with build_pipeline(**parts) as pipeline:
            pipeline.store.add_recipient(FamilyContact(
                resident_id="res_1",
                push_endpoint="https://push.example.com/sub/1",
            ))
            pipeline.orchestrator.submit(
                Interaction(resident_id="res_1", transcript="She was confused and disoriented")
            )

        assert pipeline.orchestrator.in_flight == 0
        assert len(parts["push"].sent) == 1
        assert pipeline.store.alerts()[0].state is AlertState.DELIVERED

    @pytest.mark.asyncio
    async def test_default_collaborators_are_http(self):
        async with build_pipeline() as pipeline:
            assert isinstance(pipeline.sms, TwilioSmsTransport)
            assert isinstance(pipeline.push, WebPushGatewayTransport)
            assert isinstance(pipeline.email, ResendEmailTransport)
            assert isinstance(pipeline.fallback, WebhookPager)
