"""
Tests for carewatch.dispatcher -- Channel Dispatcher.

Covers: E.164 normalisation, email and push address validation, outcome
mapping for success, addressing failures, transient and permanent
transport errors, timeouts and unexpected transport defects, and channel
isolation.
"""

from __future__ import annotations

import pytest

from carewatch.config import ChannelTimeouts
from carewatch.dispatcher import (
    ChannelDispatcher,
    normalize_e164,
    validate_email,
    validate_push_endpoint,
)
from carewatch.errors import InvalidAddressError
from carewatch.models import Channel, DeliveryStatus, FamilyContact, RenderedMessage
from carewatch.transports import (
    RecordingEmailTransport,
    RecordingPushTransport,
    RecordingSmsTransport,
    SmsTransport,
)

_MESSAGE = RenderedMessage(
    title="EMERGENCY ALERT: Mum",
    short_text="URGENT INCIDENT ALERT: critical severity incident detected for Mum (fall).",
    email_subject="[CareWatch] URGENT: Critical incident for Mum",
    email_html="<p>Incident</p>",
    email_text="Incident",
)


def _make_recipient(**overrides) -> FamilyContact:
    fields = {
        "recipient_id": "rcp_1",
        "resident_id": "res_1",
        "phone": "07700 900123",
        "email": "daughter@example.com",
        "push_endpoint": "https://push.example.com/sub/abc",
    }
    fields.update(overrides)
    return FamilyContact(**fields)


def _make_dispatcher(sms=None, push=None, email=None, **timeouts) -> ChannelDispatcher:
    return ChannelDispatcher(
        sms=sms or RecordingSmsTransport(),
        push=push or RecordingPushTransport(),
        email=email or RecordingEmailTransport(),
        timeouts=ChannelTimeouts(**timeouts),
    )


class _ExplodingSms(SmsTransport):
    async def send_sms(self, to_e164, body):
        raise RuntimeError("driver bug")


# ---------------------------------------------------------------------------
# 1. Addressing
# ---------------------------------------------------------------------------

class TestNormalizeE164:
    @pytest.mark.parametrize("raw,expected", [
        ("+44 7700 900123", "+447700900123"),
        ("07700 900123", "+447700900123"),
        ("0044 7700 900123", "+447700900123"),
        ("447700900123", "+447700900123"),
        ("7700900123", "+447700900123"),
        ("+1 (415) 555-2671", "+14155552671"),
    ])
    def test_normalises(self, raw, expected):
        assert normalize_e164(raw) == expected

    def test_default_country_code(self):
        assert normalize_e164("4155552671", default_country_code="1") == "+14155552671"

    @pytest.mark.parametrize("raw", [None, "", "   ", "12345", "+0123456789", "1234567890123456", "call me"])
    def test_rejects(self, raw):
        with pytest.raises(InvalidAddressError):
            normalize_e164(raw)


class TestAddressValidation:
    def test_email(self):
        assert validate_email(" son@example.co.uk ") == "son@example.co.uk"
        for bad in (None, "", "not-an-email", "a@b"):
            with pytest.raises(InvalidAddressError):
                validate_email(bad)

    def test_push_endpoint(self):
        assert validate_push_endpoint("https://push.example.com/x") == "https://push.example.com/x"
        for bad in (None, "", "http://push.example.com/x", "token-without-scheme"):
            with pytest.raises(InvalidAddressError):
                validate_push_endpoint(bad)


# ---------------------------------------------------------------------------
# 2. Outcomes
# ---------------------------------------------------------------------------

class TestSend:
    @pytest.mark.asyncio
    async def test_sms_sent(self):
        sms = RecordingSmsTransport()
        outcome = await _make_dispatcher(sms=sms).send(Channel.SMS, _make_recipient(), _MESSAGE)

        assert outcome.status is DeliveryStatus.SENT
        assert outcome.provider_id == "sms-1"
        assert sms.sent[0].address == "+447700900123"
        assert sms.sent[0].body == _MESSAGE.short_text

    @pytest.mark.asyncio
    async def test_push_uses_title_and_short_text(self):
        push = RecordingPushTransport()
        await _make_dispatcher(push=push).send(Channel.PUSH, _make_recipient(), _MESSAGE)
        assert push.sent[0].title == _MESSAGE.title
        assert push.sent[0].body == _MESSAGE.short_text

    @pytest.mark.asyncio
    async def test_email_carries_all_parts(self):
        email = RecordingEmailTransport()
        await _make_dispatcher(email=email).send(Channel.EMAIL, _make_recipient(), _MESSAGE)
        sent = email.sent[0]
        assert (sent.address, sent.subject, sent.html, sent.body) == (
            "daughter@example.com", _MESSAGE.email_subject, _MESSAGE.email_html, _MESSAGE.email_text,
        )

    @pytest.mark.asyncio
    async def test_missing_address_never_calls_transport(self):
        sms = RecordingSmsTransport()
        outcome = await _make_dispatcher(sms=sms).send(Channel.SMS, _make_recipient(phone=None), _MESSAGE)

        assert outcome.status is DeliveryStatus.FAILED
        assert outcome.transport_called is False
        assert outcome.retryable is False
        assert sms.calls == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retryable(self):
        sms = RecordingSmsTransport()
        sms.fail_next(transient=True, message="HTTP 503")
        outcome = await _make_dispatcher(sms=sms).send(Channel.SMS, _make_recipient(), _MESSAGE)

        assert outcome.status is DeliveryStatus.FAILED
        assert outcome.retryable is True
        assert outcome.transport_called is True
        assert outcome.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retryable(self):
        email = RecordingEmailTransport()
        email.fail_next(transient=False, message="HTTP 422")
        outcome = await _make_dispatcher(email=email).send(Channel.EMAIL, _make_recipient(), _MESSAGE)
        assert outcome.retryable is False

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        push = RecordingPushTransport()
        push.hang()
        outcome = await _make_dispatcher(push=push, push_seconds=0.01).send(
            Channel.PUSH, _make_recipient(), _MESSAGE
        )
        assert outcome.status is DeliveryStatus.FAILED
        assert outcome.retryable is True
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self):
        outcome = await _make_dispatcher(sms=_ExplodingSms()).send(Channel.SMS, _make_recipient(), _MESSAGE)
        assert outcome.status is DeliveryStatus.FAILED
        assert outcome.retryable is True
        assert "RuntimeError" in outcome.error

    @pytest.mark.asyncio
    async def test_one_transport_per_call(self):
        sms, push, email = RecordingSmsTransport(), RecordingPushTransport(), RecordingEmailTransport()
        await _make_dispatcher(sms=sms, push=push, email=email).send(Channel.EMAIL, _make_recipient(), _MESSAGE)
        assert (sms.calls, push.calls, email.calls) == (0, 0, 1)


class TestIsolation:
    @pytest.mark.asyncio
    async def test_broken_channel_does_not_affect_others(self):
        sms = RecordingSmsTransport()
        sms.fail_always()
        dispatcher = _make_dispatcher(sms=sms)
        recipient = _make_recipient()

        sms_outcome = await dispatcher.send(Channel.SMS, recipient, _MESSAGE)
        email_outcome = await dispatcher.send(Channel.EMAIL, recipient, _MESSAGE)

        assert sms_outcome.status is DeliveryStatus.FAILED
        assert email_outcome.status is DeliveryStatus.SENT
