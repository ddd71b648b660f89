"""
Transport collaborators -- SMS, push, and email.

Each channel sits behind its own small interface so that a failure in one
provider can never leak into another.  Every transport makes exactly one
provider call per invocation and reports failure by raising
``TransportError``; retry policy belongs to the orchestrator.

HTTP implementations use ``httpx.AsyncClient``.  A transport owns its
client from construction until ``aclose()``; tests pass in a client built
on ``httpx.MockTransport`` instead.

**Retryability of HTTP failures:**

* 5xx and 429 responses, timeouts, and connection errors are transient.
* Any other 4xx is permanent: the provider rejected the request itself.
* A 2xx whose body cannot be read is permanent.  The provider may well
  have accepted the message, and retrying would risk a duplicate.

The ``Recording*`` transports keep everything in memory and can be told
to fail or hang, for tests and local runs.
"""

from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from carewatch.errors import TransportError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class SmsTransport(ABC):
    @abstractmethod
    async def send_sms(self, to_e164: str, body: str) -> str:
        """Send one SMS and return the provider's message id."""

    async def aclose(self) -> None:
        pass


class PushTransport(ABC):
    @abstractmethod
    async def send_push(self, endpoint: str, title: str, body: str) -> Optional[str]:
        """Send one push notification.  Some gateways return no id."""

    async def aclose(self) -> None:
        pass


class EmailTransport(ABC):
    @abstractmethod
    async def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        """Send one email and return the provider's message id."""

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# HTTP implementations
# ---------------------------------------------------------------------------

def _is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


async def _post(
    client: httpx.AsyncClient,
    provider: str,
    url: str,
    **kwargs: Any,
) -> dict[str, Any]:
    try:
        response = await client.post(url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        logger.debug("provider_http_error", provider=provider, status_code=status)
        raise TransportError(
            f"{provider} returned HTTP {status}",
            transient=_is_transient_status(status),
            status_code=status,
        ) from exc
    except httpx.HTTPError as exc:
        logger.debug("provider_request_failed", provider=provider, error_type=type(exc).__name__)
        raise TransportError(
            f"{provider} request failed: {type(exc).__name__}",
            transient=True,
        ) from exc

    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError as exc:
        raise TransportError(
            f"{provider} returned an unreadable body",
            transient=False,
            status_code=response.status_code,
        ) from exc
    return body if isinstance(body, dict) else {}


class TwilioSmsTransport(SmsTransport):
    """SMS through the Twilio Messages API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_url: str = "https://api.twilio.com/2010-04-01",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._url = f"{api_url.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send_sms(self, to_e164: str, body: str) -> str:
        data = await _post(
            self._client,
            "twilio",
            self._url,
            auth=(self._account_sid, self._auth_token),
            data={"From": self._from_number, "To": to_e164, "Body": body},
        )
        sid = data.get("sid")
        if not sid:
            raise TransportError("twilio response carried no message sid", transient=False)
        return sid

    async def aclose(self) -> None:
        await self._client.aclose()


class WebPushGatewayTransport(PushTransport):
    """Push notifications relayed through an HTTP push gateway.

    The gateway accepts ``{"endpoint", "title", "body"}`` and holds the
    VAPID keys, so this process never signs push payloads itself.
    """

    def __init__(
        self,
        gateway_url: str,
        token: str = "",
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = gateway_url
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send_push(self, endpoint: str, title: str, body: str) -> Optional[str]:
        data = await _post(
            self._client,
            "push_gateway",
            self._url,
            headers=self._headers,
            json={"endpoint": endpoint, "title": title, "body": body},
        )
        return data.get("id")

    async def aclose(self) -> None:
        await self._client.aclose()


class ResendEmailTransport(EmailTransport):
    """Email through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str = "https://api.resend.com",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = f"{api_url.rstrip('/')}/emails"
        self._from = from_address
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        data = await _post(
            self._client,
            "resend",
            self._url,
            headers=self._headers,
            json={
                "from": self._from,
                "to": [to],
                "subject": subject,
                "html": html,
                "text": text,
            },
        )
        message_id = data.get("id")
        if not message_id:
            raise TransportError("resend response carried no message id", transient=False)
        return message_id

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class RecordedSend(BaseModel):
    """One message accepted by a recording transport."""

    address: str
    body: str
    title: Optional[str] = None
    subject: Optional[str] = None
    html: Optional[str] = None
    provider_id: str


class _RecordingTransport:
    """Shared failure scripting for the in-memory transports.

    ``calls`` counts every invocation, failed or not; ``sent`` holds only
    the messages that were accepted.
    """

    _prefix = "rec"

    def __init__(self) -> None:
        self.sent: list[RecordedSend] = []
        self.calls = 0
        self.closed = False
        self._failures: deque[TransportError] = deque()
        self._always: Optional[TransportError] = None
        self._hang = False
        self._ids = itertools.count(1)

    def fail_next(self, count: int = 1, transient: bool = True, message: str = "provider unavailable") -> None:
        for _ in range(count):
            self._failures.append(TransportError(message, transient=transient))

    def fail_always(self, transient: bool = True, message: str = "provider unavailable") -> None:
        self._always = TransportError(message, transient=transient)

    def hang(self) -> None:
        """Never complete a call; used to exercise send timeouts."""
        self._hang = True

    def recover(self) -> None:
        self._failures.clear()
        self._always = None
        self._hang = False

    async def _call(self) -> str:
        self.calls += 1
        if self._hang:
            await asyncio.Event().wait()
        if self._failures:
            raise self._failures.popleft()
        if self._always is not None:
            raise self._always
        return f"{self._prefix}-{next(self._ids)}"

    async def aclose(self) -> None:
        self.closed = True


class RecordingSmsTransport(_RecordingTransport, SmsTransport):
    _prefix = "sms"

    async def send_sms(self, to_e164: str, body: str) -> str:
        provider_id = await self._call()
        self.sent.append(RecordedSend(address=to_e164, body=body, provider_id=provider_id))
        return provider_id


class RecordingPushTransport(_RecordingTransport, PushTransport):
    _prefix = "push"

    async def send_push(self, endpoint: str, title: str, body: str) -> Optional[str]:
        provider_id = await self._call()
        self.sent.append(
            RecordedSend(address=endpoint, title=title, body=body, provider_id=provider_id)
        )
        return provider_id


class RecordingEmailTransport(_RecordingTransport, EmailTransport):
    _prefix = "email"

    async def send_email(self, to: str, subject: str, html: str, text: str) -> str:
        provider_id = await self._call()
        self.sent.append(
            RecordedSend(address=to, subject=subject, html=html, body=text, provider_id=provider_id)
        )
        return provider_id
