"""
Tests for carewatch.fallback -- operational fallback sinks.

Covers: webhook payload contents (no contact details), unreachable and
failing webhooks raising FallbackUnavailableError, a missing webhook URL,
and the recording pager.
"""

from __future__ import annotations

import json

import httpx
import pytest

from carewatch.errors import FallbackUnavailableError
from carewatch.fallback import RecordingPager, WebhookPager
from carewatch.models import AlertEvent, IncidentCategory, IncidentDetection, Severity


def _make_alert() -> AlertEvent:
    return AlertEvent(
        interaction_id="int_1",
        resident_id="res_1",
        org_id="org_a",
        detection=IncidentDetection(
            is_incident=True,
            confidence=1.0,
            severity=Severity.CRITICAL,
            categories=frozenset({IncidentCategory.MEDICAL, IncidentCategory.FALL}),
            requires_immediate_alert=True,
        ),
    )


def _make_pager(handler, url: str = "https://oncall.example.com/hook") -> WebhookPager:
    return WebhookPager(url, token="tok", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestWebhookPager:
    @pytest.mark.asyncio
    async def test_page_payload(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"id": "pg_1"})

        alert = _make_alert()
        ref = await _make_pager(handler).page(alert, "all_deliveries_failed")

        assert ref == "pg_1"
        assert seen["auth"] == "Bearer tok"
        assert seen["body"] == {
            "alert_id": alert.alert_id,
            "interaction_id": "int_1",
            "resident_id": "res_1",
            "org_id": "org_a",
            "severity": "critical",
            "categories": ["fall", "medical"],
            "reason": "all_deliveries_failed",
        }

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        pager = _make_pager(lambda request: httpx.Response(503))
        with pytest.raises(FallbackUnavailableError) as exc_info:
            await pager.page(_make_alert(), "no_eligible_recipients")
        assert exc_info.value.details["status_code"] == 503

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(FallbackUnavailableError):
            await _make_pager(handler).page(_make_alert(), "x")

    @pytest.mark.asyncio
    async def test_unconfigured_raises(self):
        pager = _make_pager(lambda request: httpx.Response(200), url="")
        with pytest.raises(FallbackUnavailableError):
            await pager.page(_make_alert(), "x")

    @pytest.mark.asyncio
    async def test_accepted_without_id(self):
        pager = _make_pager(lambda request: httpx.Response(202, content=b"accepted"))
        assert await pager.page(_make_alert(), "x") is None


class TestRecordingPager:
    @pytest.mark.asyncio
    async def test_records_pages(self):
        pager = RecordingPager()
        assert await pager.page(_make_alert(), "all_channels_suppressed") == "page-1"
        assert pager.pages[0].reason == "all_channels_suppressed"

    @pytest.mark.asyncio
    async def test_unavailable(self):
        pager = RecordingPager()
        pager.available = False
        with pytest.raises(FallbackUnavailableError):
            await pager.page(_make_alert(), "x")
        assert pager.pages == []
