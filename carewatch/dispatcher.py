"""
Channel Dispatcher -- One Message, One Channel, One Transport Call.

``ChannelDispatcher.send`` resolves the recipient's address for the
channel, makes exactly one bounded call to that channel's transport, and
normalises whatever happens into a ``DeliveryOutcome``.  It never raises
for delivery problems and never retries; the orchestrator reads
``retryable`` and decides.

**Outcome rules:**

* Missing or unusable address: ``failed``, ``transport_called=False``,
  ``retryable=False``.  The transport is not touched.
* ``TransportError``: ``failed`` with the error text; ``retryable`` is the
  error's ``transient`` flag.
* The call exceeds its channel timeout: ``failed``, retryable.
* Any other exception from a transport: ``failed``, retryable, and
  logged with its traceback as a transport defect.

Channels are isolated: each has its own transport instance and its own
timeout, so a hung SMS provider cannot hold up email.
"""

from __future__ import annotations

import asyncio
import re
from typing import Optional

import httpx
import structlog

from carewatch.config import ChannelTimeouts
from carewatch.errors import InvalidAddressError, TransportError
from carewatch.models import Channel, DeliveryOutcome, Recipient, RenderedMessage
from carewatch.transports import EmailTransport, PushTransport, SmsTransport

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Addressing
# ---------------------------------------------------------------------------

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_NON_DIGITS = re.compile(r"\D")

E164_MIN_DIGITS = 8
E164_MAX_DIGITS = 15


def normalize_e164(raw: Optional[str], default_country_code: str = "44") -> str:
    """Normalise a stored phone number to E.164.

    * ``+`` prefix: already international, punctuation is stripped.
    * ``00`` prefix: international dialling prefix, replaced by ``+``.
    * Starts with the default country code: ``+`` is prepended.
    * National ``0`` prefix, or a bare 10-digit number: the default
      country code is applied.

    Raises:
        InvalidAddressError: If nothing usable remains or the result is
            outside the E.164 length range.
    """
    if raw is None or not raw.strip():
        raise InvalidAddressError("recipient has no phone number")

    stripped = raw.strip()
    digits = _NON_DIGITS.sub("", stripped)

    if stripped.startswith("+"):
        international = digits
    elif digits.startswith("00"):
        international = digits[2:]
    elif digits.startswith(default_country_code):
        international = digits
    elif digits.startswith("0"):
        international = default_country_code + digits[1:]
    elif len(digits) == 10:
        international = default_country_code + digits
    else:
        international = digits

    if (
        not E164_MIN_DIGITS <= len(international) <= E164_MAX_DIGITS
        or international.startswith("0")
    ):
        raise InvalidAddressError(
            "phone number cannot be normalised to E.164",
            details={"digits": len(international)},
        )
    return f"+{international}"


def validate_email(raw: Optional[str]) -> str:
    if raw is None or not raw.strip():
        raise InvalidAddressError("recipient has no email address")
    address = raw.strip()
    if len(address) > 254 or not _EMAIL_PATTERN.match(address):
        raise InvalidAddressError("email address is malformed")
    return address


def validate_push_endpoint(raw: Optional[str]) -> str:
    if raw is None or not raw.strip():
        raise InvalidAddressError("recipient has no push subscription")
    endpoint = raw.strip()
    try:
        url = httpx.URL(endpoint)
    except httpx.InvalidURL as exc:
        raise InvalidAddressError("push endpoint is not a valid URL") from exc
    if url.scheme != "https" or not url.host:
        raise InvalidAddressError("push endpoint must be an https URL")
    return endpoint


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class ChannelDispatcher:
    """Sends one rendered message over one channel.

    Args:
        sms: SMS transport.
        push: Push transport.
        email: Email transport.
        timeouts: Per-channel bound on a single transport call.
        default_country_code: Applied to national-format phone numbers.
    """

    def __init__(
        self,
        sms: SmsTransport,
        push: PushTransport,
        email: EmailTransport,
        timeouts: Optional[ChannelTimeouts] = None,
        default_country_code: str = "44",
    ) -> None:
        self._sms = sms
        self._push = push
        self._email = email
        timeouts = timeouts or ChannelTimeouts()
        self._timeouts = {
            Channel.SMS: timeouts.sms_seconds,
            Channel.PUSH: timeouts.push_seconds,
            Channel.EMAIL: timeouts.email_seconds,
        }
        self._country_code = default_country_code

    async def send(
        self,
        channel: Channel,
        recipient: Recipient,
        message: RenderedMessage,
    ) -> DeliveryOutcome:
        log = logger.bind(channel=channel.value, recipient_id=recipient.recipient_id)

        try:
            address = self.address_for(channel, recipient)
        except InvalidAddressError as exc:
            log.warning("notification_address_invalid", reason=exc.message)
            return DeliveryOutcome.failed(exc.message, retryable=False, transport_called=False)

        timeout = self._timeouts[channel]
        try:
            provider_id = await asyncio.wait_for(
                self._deliver(channel, address, message), timeout=timeout
            )
        except asyncio.TimeoutError:
            log.warning("notification_delivery_timeout", timeout_seconds=timeout)
            return DeliveryOutcome.failed(
                f"{channel.value} send timed out after {timeout:g}s", retryable=True
            )
        except TransportError as exc:
            log.warning(
                "notification_delivery_failed",
                error=exc.message,
                transient=exc.transient,
                status_code=exc.status_code,
            )
            return DeliveryOutcome.failed(exc.message, retryable=exc.transient)
        except Exception as exc:
            log.error("transport_defect", error_type=type(exc).__name__, exc_info=True)
            return DeliveryOutcome.failed(
                f"unexpected {type(exc).__name__} from {channel.value} transport",
                retryable=True,
            )

        log.info("notification_delivered", provider_id=provider_id)
        return DeliveryOutcome.sent(provider_id)

    def address_for(self, channel: Channel, recipient: Recipient) -> str:
        """The normalised address for ``channel``.

        Raises:
            InvalidAddressError: If the recipient cannot be reached on it.
        """
        if channel is Channel.SMS:
            return normalize_e164(recipient.phone, self._country_code)
        if channel is Channel.EMAIL:
            return validate_email(recipient.email)
        return validate_push_endpoint(recipient.push_endpoint)

    async def _deliver(self, channel: Channel, address: str, message: RenderedMessage) -> Optional[str]:
        if channel is Channel.SMS:
            return await self._sms.send_sms(address, message.short_text)
        if channel is Channel.EMAIL:
            return await self._email.send_email(
                address, message.email_subject, message.email_html, message.email_text
            )
        return await self._push.send_push(address, message.title, message.short_text)
