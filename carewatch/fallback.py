"""
Operational Fallback -- Paging On-Call When No One Was Reached.

When an alert that required an immediate response ends without a single
``sent`` delivery, the orchestrator pages the operational fallback sink
exactly once.  This covers every route to silence: all channels failed,
every recipient suppressed, no eligible recipients, or recipient
resolution exhausted its retries.

The page carries identifiers, severity, categories, and the reason only.
Contact details and transcripts are never included.

A fallback that cannot be reached raises ``FallbackUnavailableError``,
the one condition the pipeline treats as fatal.
"""

from __future__ import annotations

import itertools
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel

from carewatch.errors import FallbackUnavailableError
from carewatch.models import AlertEvent

logger = structlog.get_logger(__name__)


class FallbackPage(BaseModel):
    """Payload sent to the operational sink."""

    alert_id: str
    interaction_id: str
    resident_id: str
    org_id: Optional[str] = None
    severity: str
    categories: list[str]
    reason: str

    @classmethod
    def for_alert(cls, alert: AlertEvent, reason: str) -> "FallbackPage":
        return cls(
            alert_id=alert.alert_id,
            interaction_id=alert.interaction_id,
            resident_id=alert.resident_id,
            org_id=alert.org_id,
            severity=alert.detection.severity.value,
            categories=sorted(c.value for c in alert.detection.categories),
            reason=reason,
        )


class OperationalFallback(ABC):
    @abstractmethod
    async def page(self, alert: AlertEvent, reason: str) -> Optional[str]:
        """Page on-call about ``alert``.

        Returns:
            The sink's reference for the page, if it returns one.

        Raises:
            FallbackUnavailableError: If the sink could not be reached.
        """

    async def aclose(self) -> None:
        pass


class WebhookPager(OperationalFallback):
    """Posts a ``FallbackPage`` to an on-call webhook."""

    def __init__(
        self,
        webhook_url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = webhook_url
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def page(self, alert: AlertEvent, reason: str) -> Optional[str]:
        if not self._url:
            raise FallbackUnavailableError(
                "No operational fallback webhook is configured",
                details={"alert_id": alert.alert_id},
            )
        payload = FallbackPage.for_alert(alert, reason)
        try:
            response = await self._client.post(
                self._url, headers=self._headers, json=payload.model_dump(mode="json")
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FallbackUnavailableError(
                f"Fallback webhook returned HTTP {exc.response.status_code}",
                details={"alert_id": alert.alert_id, "status_code": exc.response.status_code},
            ) from exc
        except httpx.HTTPError as exc:
            raise FallbackUnavailableError(
                f"Fallback webhook unreachable: {type(exc).__name__}",
                details={"alert_id": alert.alert_id},
            ) from exc

        # The page was accepted; a body without an id is not a failure.
        try:
            body: Any = response.json() if response.content else {}
        except ValueError:
            return None
        return body.get("id") if isinstance(body, dict) else None

    async def aclose(self) -> None:
        await self._client.aclose()


class RecordingPager(OperationalFallback):
    """In-memory fallback that keeps every page; can be made unavailable."""

    def __init__(self) -> None:
        self.pages: list[FallbackPage] = []
        self.available = True
        self._ids = itertools.count(1)
        self.closed = False

    async def page(self, alert: AlertEvent, reason: str) -> Optional[str]:
        if not self.available:
            raise FallbackUnavailableError(
                "Operational fallback is unavailable",
                details={"alert_id": alert.alert_id},
            )
        self.pages.append(FallbackPage.for_alert(alert, reason))
        return f"page-{next(self._ids)}"

    async def aclose(self) -> None:
        self.closed = True
