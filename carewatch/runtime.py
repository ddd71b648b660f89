"""
Process wiring.

``build_pipeline`` assembles every collaborator from ``PipelineSettings``
and owns their lifecycle: HTTP clients are created on entry, in-flight
interactions are drained on exit, and every transport is closed
afterwards.  Any collaborator can be passed in instead, which is how the
example walkthrough and the tests run the pipeline fully in memory.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog

from carewatch.audit import AuditLog
from carewatch.classifier import TranscriptClassifier
from carewatch.config import DEFAULT_SETTINGS, PipelineSettings
from carewatch.dispatcher import ChannelDispatcher
from carewatch.fallback import OperationalFallback, WebhookPager
from carewatch.ledger import DeliveryLedger
from carewatch.logging import configure_logging
from carewatch.orchestrator import EscalationOrchestrator
from carewatch.rendering import MessageRenderer
from carewatch.resolver import RecipientResolver
from carewatch.store import InMemoryCareStore
from carewatch.transports import (
    EmailTransport,
    PushTransport,
    ResendEmailTransport,
    SmsTransport,
    TwilioSmsTransport,
    WebPushGatewayTransport,
)

logger = structlog.get_logger(__name__)


class Pipeline:
    """Handles to the assembled pipeline's parts."""

    def __init__(
        self,
        orchestrator: EscalationOrchestrator,
        store: InMemoryCareStore,
        ledger: DeliveryLedger,
        audit_log: AuditLog,
        sms: SmsTransport,
        push: PushTransport,
        email: EmailTransport,
        fallback: OperationalFallback,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.ledger = ledger
        self.audit_log = audit_log
        self.sms = sms
        self.push = push
        self.email = email
        self.fallback = fallback

    async def aclose(self) -> None:
        for closeable in (self.sms, self.push, self.email, self.fallback):
            await closeable.aclose()


@asynccontextmanager
async def build_pipeline(
    settings: Optional[PipelineSettings] = None,
    store: Optional[InMemoryCareStore] = None,
    sms: Optional[SmsTransport] = None,
    push: Optional[PushTransport] = None,
    email: Optional[EmailTransport] = None,
    fallback: Optional[OperationalFallback] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Optional[Callable[[], datetime]] = None,
    configure_logs: bool = False,
) -> AsyncIterator[Pipeline]:
    """Build the pipeline, yield it, then drain and close.

    Args:
        settings: Pipeline settings; ``DEFAULT_SETTINGS`` when omitted.
        store: Persistence for recipients, preferences, and alerts.
        sms, push, email: Transports.  HTTP transports configured from
            ``settings.transports`` are created for any left out.
        fallback: Operational sink; a ``WebhookPager`` by default.
        sleep: Backoff sleep passed to the orchestrator.
        clock: "Now" source passed to the orchestrator.
        configure_logs: Call ``configure_logging`` from the settings first.
    """
    settings = settings or DEFAULT_SETTINGS
    if configure_logs:
        configure_logging(settings.log_level, settings.log_format)

    t = settings.transports
    store = store or InMemoryCareStore()
    sms = sms or TwilioSmsTransport(
        account_sid=t.twilio_account_sid,
        auth_token=t.twilio_auth_token,
        from_number=t.twilio_from_number,
        api_url=t.twilio_api_url,
        timeout_seconds=settings.timeouts.sms_seconds,
    )
    push = push or WebPushGatewayTransport(
        gateway_url=t.push_gateway_url,
        token=t.push_gateway_token,
        timeout_seconds=settings.timeouts.push_seconds,
    )
    email = email or ResendEmailTransport(
        api_key=t.resend_api_key,
        from_address=t.email_from,
        api_url=t.resend_api_url,
        timeout_seconds=settings.timeouts.email_seconds,
    )
    fallback = fallback or WebhookPager(
        webhook_url=settings.fallback.webhook_url,
        token=settings.fallback.webhook_token,
        timeout_seconds=settings.fallback.timeout_seconds,
    )

    ledger = DeliveryLedger()
    audit_log = AuditLog()
    orchestrator_kwargs: dict[str, Any] = {"sleep": sleep}
    if clock is not None:
        orchestrator_kwargs["clock"] = clock

    orchestrator = EscalationOrchestrator(
        classifier=TranscriptClassifier(settings.classifier),
        resolver=RecipientResolver(store),
        preferences=store,
        alerts=store,
        dispatcher=ChannelDispatcher(
            sms=sms,
            push=push,
            email=email,
            timeouts=settings.timeouts,
            default_country_code=t.default_country_code,
        ),
        renderer=MessageRenderer(settings.rendering),
        ledger=ledger,
        audit_log=audit_log,
        fallback=fallback,
        settings=settings,
        **orchestrator_kwargs,
    )
    pipeline = Pipeline(orchestrator, store, ledger, audit_log, sms, push, email, fallback)
    logger.info("pipeline_started")
    try:
        yield pipeline
    finally:
        pending = orchestrator.in_flight
        if pending:
            logger.info("pipeline_draining", in_flight=pending)
            await orchestrator.drain()
        await pipeline.aclose()
        logger.info("pipeline_stopped")
