"""
Escalation Orchestrator -- From Completed Interaction to Delivered Alert.

The orchestrator is the only component that makes decisions.  The
classifier, resolver, gate, and dispatcher are stateless services it
calls; the ledger and audit log are where its decisions are written down.

**Per interaction:**

1. Classify the transcript.  A classifier fault is logged and audited,
   then treated like any other non-incident.
2. Not an incident: return ``None``.  Nothing else is touched.
3. Open an ``AlertEvent`` keyed by interaction id.  If one already exists
   the interaction was seen before; return the existing alert without
   dispatching anything.
4. Resolve recipients and snapshot each one's preferences, retrying the
   whole read with backoff while persistence is down.  When the retries
   run out the alert settles as failed like any other undeliverable one.
5. Gate each recipient.  Suppressed channels go straight to the ledger.
6. Dispatch every permitted (recipient, channel) pair concurrently.
   Every channel of a recipient is started at once; the priority order
   only fixes the order the tasks are created in, not a sequence of
   sends waiting on each other.
   Routine alerts share a bounded semaphore; immediate alerts do not wait
   on one.  Transient failures are retried with exponential backoff, and
   every try is written to the ledger before the next one is scheduled.
7. Settle the alert's terminal state from the final ledger rows, and if
   an immediate alert reached nobody, page the operational fallback once.

**State machine:**

    CREATED -> DISPATCHING -> DELIVERED | DEGRADED | FAILED

``DELIVERED``: at least one sent and none failed.  ``DEGRADED``: some
sent, some failed.  ``FAILED``: nothing sent.  Any other transition
raises ``InvalidTransitionError``.

**Failure model:** one recipient or channel failing never affects its
siblings; every failure becomes a ledger row.  The only error that
escapes ``on_interaction_completed`` is
``FallbackUnavailableError``, raised after the alert's final state has
been saved and the failure audited.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from carewatch.audit import AuditEventType, AuditLog
from carewatch.classifier import TranscriptClassifier
from carewatch.config import PipelineSettings
from carewatch.dispatcher import ChannelDispatcher
from carewatch.errors import FallbackUnavailableError, InvalidTransitionError, RecipientResolutionError
from carewatch.fallback import OperationalFallback
from carewatch.ledger import DeliveryLedger
from carewatch.logging import bind_alert_context, clear_alert_context
from carewatch.models import (
    AlertEvent,
    AlertState,
    Channel,
    DeliveryAttempt,
    DeliveryStatus,
    Interaction,
    NotificationPreference,
    Recipient,
    RenderedMessage,
    SuppressionReason,
)
from carewatch.preferences import GateDecision, PreferenceGate, load_preference
from carewatch.rendering import MessageRenderer
from carewatch.resolver import RecipientResolver
from carewatch.store import AlertRepository, PreferenceRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[AlertState, set[AlertState]] = {
    AlertState.CREATED: {AlertState.DISPATCHING},
    AlertState.DISPATCHING: {
        AlertState.DELIVERED,
        AlertState.DEGRADED,
        AlertState.FAILED,
    },
    AlertState.DELIVERED: set(),  # terminal
    AlertState.DEGRADED: set(),  # terminal
    AlertState.FAILED: set(),  # terminal
}


def transition(alert: AlertEvent, target: AlertState) -> AlertState:
    """Move ``alert`` to ``target`` and return the state it left.

    Raises:
        InvalidTransitionError: If the move is not allowed.
    """
    allowed = _VALID_TRANSITIONS.get(alert.state, set())
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition from {alert.state.value} to {target.value}. "
            f"Allowed transitions: {sorted(s.value for s in allowed)}",
            details={"alert_id": alert.alert_id},
        )
    previous = alert.state
    alert.state = target
    return previous


def settle_state(final_attempts: list[DeliveryAttempt]) -> AlertState:
    """Terminal state implied by the latest ledger row of every pair."""
    statuses = Counter(a.status for a in final_attempts)
    if statuses[DeliveryStatus.SENT] == 0:
        return AlertState.FAILED
    if statuses[DeliveryStatus.FAILED]:
        return AlertState.DEGRADED
    return AlertState.DELIVERED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Reasons recorded when the operational fallback is paged.
FALLBACK_RESOLUTION_FAILED = "recipient_resolution_failed"
FALLBACK_NO_RECIPIENTS = "no_eligible_recipients"
FALLBACK_ALL_SUPPRESSED = "all_channels_suppressed"
FALLBACK_ALL_FAILED = "all_deliveries_failed"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class EscalationOrchestrator:
    """Coordinates one alert per incident from detection to terminal state.

    Args:
        classifier: Transcript scorer.
        resolver: Recipient resolver.
        preferences: Preference repository; rows are read once per alert.
        alerts: Alert repository providing the idempotent create.
        dispatcher: Channel dispatcher.
        renderer: Message renderer.
        ledger: Delivery ledger.
        audit_log: Pipeline audit log.
        fallback: Operational fallback sink.
        settings: Pipeline settings; defaults to ``PipelineSettings()``.
        gate: Preference gate; a fresh one when omitted.
        sleep: Awaitable used for every backoff delay.  Tests inject a
            recorder so no test waits in real time.
        clock: Source of "now" for gate decisions and timestamps.
    """

    def __init__(
        self,
        classifier: TranscriptClassifier,
        resolver: RecipientResolver,
        preferences: PreferenceRepository,
        alerts: AlertRepository,
        dispatcher: ChannelDispatcher,
        renderer: MessageRenderer,
        ledger: DeliveryLedger,
        audit_log: AuditLog,
        fallback: OperationalFallback,
        settings: Optional[PipelineSettings] = None,
        gate: Optional[PreferenceGate] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._classifier = classifier
        self._resolver = resolver
        self._preferences = preferences
        self._alerts = alerts
        self._dispatcher = dispatcher
        self._renderer = renderer
        self._ledger = ledger
        self._audit = audit_log
        self._fallback = fallback
        self._settings = settings or PipelineSettings()
        self._gate = gate or PreferenceGate()
        self._sleep = sleep
        self._clock = clock
        self._in_flight: set[asyncio.Task] = set()

    # -- entry points --

    async def on_interaction_completed(self, interaction: Interaction) -> Optional[AlertEvent]:
        """Run the whole pipeline for one completed interaction.

        Returns:
            The alert, in a terminal state, or None when the transcript is
            not an incident.  For an interaction already processed, the
            existing alert is returned untouched.

        Raises:
            FallbackUnavailableError: An immediate alert reached nobody and
                the operational fallback could not be paged either.
        """
        detection = self._classifier.classify(interaction.transcript, interaction.sentiment_score)

        if detection.is_degraded:
            logger.error(
                "interaction_classification_degraded",
                interaction_id=interaction.interaction_id,
                resident_id=interaction.resident_id,
            )
            self._audit.record(
                AuditEventType.CLASSIFIER_FAULT,
                org_id=interaction.org_id,
                resident_id=interaction.resident_id,
                target_entity=interaction.interaction_id,
                error=detection.classifier_error,
            )

        if not detection.is_incident:
            return None

        candidate = AlertEvent(
            interaction_id=interaction.interaction_id,
            resident_id=interaction.resident_id,
            org_id=interaction.org_id,
            detection=detection,
            created_at=self._clock(),
        )
        alert, created = await self._alerts.create_if_absent(candidate)
        if not created:
            logger.info(
                "duplicate_interaction_ignored",
                interaction_id=interaction.interaction_id,
                alert_id=alert.alert_id,
                state=alert.state.value,
            )
            self._audit.record(
                AuditEventType.DUPLICATE_INTERACTION,
                org_id=alert.org_id,
                alert_id=alert.alert_id,
                resident_id=alert.resident_id,
                target_entity=interaction.interaction_id,
            )
            return alert

        bind_alert_context(alert.alert_id, alert.resident_id)
        try:
            logger.info(
                "alert_created",
                severity=detection.severity.value,
                confidence=detection.confidence,
                categories=sorted(c.value for c in detection.categories),
                immediate=detection.requires_immediate_alert,
            )
            self._audit.record(
                AuditEventType.ALERT_CREATED,
                org_id=alert.org_id,
                alert_id=alert.alert_id,
                resident_id=alert.resident_id,
                target_entity=interaction.interaction_id,
                severity=detection.severity.value,
                confidence=detection.confidence,
                categories=sorted(c.value for c in detection.categories),
                detected_keywords=list(detection.detected_keywords),
                requires_immediate_alert=detection.requires_immediate_alert,
            )
            return await self._escalate(alert, interaction)
        finally:
            clear_alert_context()

    def submit(self, interaction: Interaction) -> asyncio.Task:
        """Process ``interaction`` as an independent task and return it.

        One slow or failing interaction never delays the next.  Use
        ``drain()`` to wait for everything submitted so far.
        """
        task = asyncio.create_task(self._run_detached(interaction))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def drain(self) -> list[Any]:
        """Wait for all in-flight interactions, including any submitted
        while the drain is already waiting.

        Returns:
            One result per task: the alert, None, or the exception that
            ended it.
        """
        results: list[Any] = []
        while self._in_flight:
            results.extend(await asyncio.gather(*list(self._in_flight), return_exceptions=True))
        return results

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def _run_detached(self, interaction: Interaction) -> Optional[AlertEvent]:
        try:
            return await self.on_interaction_completed(interaction)
        except FallbackUnavailableError:
            # Already logged at critical and audited.
            raise
        except Exception:
            logger.exception(
                "interaction_processing_failed",
                interaction_id=interaction.interaction_id,
            )
            raise

    # -- pipeline --

    async def _escalate(self, alert: AlertEvent, interaction: Interaction) -> AlertEvent:
        self._transition(alert, AlertState.DISPATCHING)
        alert.dispatch_started_at = self._clock()
        await self._alerts.save(alert)

        try:
            targets = await self._resolve_with_retry(alert)
        except RecipientResolutionError:
            return await self._settle(alert, FALLBACK_RESOLUTION_FAILED)

        recipients = [recipient for recipient, _ in targets]
        alert.recipient_ids = [r.recipient_id for r in recipients]
        if not recipients:
            logger.warning("alert_has_no_recipients")
            self._audit.record(
                AuditEventType.NO_RECIPIENTS,
                org_id=alert.org_id,
                alert_id=alert.alert_id,
                resident_id=alert.resident_id,
            )
            return await self._settle(alert, FALLBACK_NO_RECIPIENTS)

        detection = alert.detection
        now = self._clock()
        plan: list[tuple[Recipient, GateDecision]] = []
        for recipient, preference in targets:
            decision = self._gate.evaluate(
                recipient,
                preference,
                detection.severity,
                now,
                immediate=detection.requires_immediate_alert,
            )
            plan.append((recipient, decision))

        for recipient, decision in plan:
            for channel, reason in decision.suppressed.items():
                self._record_suppressed(alert, recipient, channel, reason)

        message = self._renderer.render(alert, resident_name=interaction.resident_name)
        semaphore: Optional[asyncio.Semaphore] = None
        if not detection.requires_immediate_alert:
            semaphore = asyncio.Semaphore(self._settings.dispatch.routine_max_concurrency)

        tasks = [
            asyncio.create_task(self._deliver(alert, recipient, channel, message, semaphore))
            for recipient, decision in plan
            for channel in decision.permitted
        ]
        logger.info(
            "dispatch_started",
            recipients=len(recipients),
            sends=len(tasks),
            suppressed=sum(len(d.suppressed) for _, d in plan),
            bounded=semaphore is not None,
        )
        if tasks:
            await asyncio.gather(*tasks)

        final = self._ledger.final_attempts(alert.alert_id)
        statuses = Counter(a.status for a in final)
        if statuses[DeliveryStatus.FAILED]:
            reason = FALLBACK_ALL_FAILED
        else:
            reason = FALLBACK_ALL_SUPPRESSED
        return await self._settle(alert, reason)

    async def _load_targets(
        self, alert: AlertEvent
    ) -> list[tuple[Recipient, NotificationPreference]]:
        recipients = await self._resolver.resolve(alert.resident_id)
        return [
            (recipient, await load_preference(self._preferences, recipient))
            for recipient in recipients
        ]

    async def _resolve_with_retry(
        self, alert: AlertEvent
    ) -> list[tuple[Recipient, NotificationPreference]]:
        policy = self._settings.resolution_retry
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await self._load_targets(alert)
            except RecipientResolutionError as exc:
                if attempt == policy.max_attempts:
                    logger.error(
                        "recipient_resolution_exhausted",
                        attempts=attempt,
                        error=exc.message,
                    )
                    raise
                delay = policy.backoff_for(attempt)
                logger.warning(
                    "recipient_resolution_retry",
                    attempt=attempt,
                    delay_seconds=delay,
                    error=exc.message,
                )
                self._audit.record(
                    AuditEventType.RESOLUTION_RETRY,
                    org_id=alert.org_id,
                    alert_id=alert.alert_id,
                    resident_id=alert.resident_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=exc.message,
                )
                await self._sleep(delay)
        raise RecipientResolutionError("resolution retry budget is empty")

    async def _deliver(
        self,
        alert: AlertEvent,
        recipient: Recipient,
        channel: Channel,
        message: RenderedMessage,
        semaphore: Optional[asyncio.Semaphore],
    ) -> DeliveryAttempt:
        retry = self._settings.retry
        attempt_number = 1
        while True:
            if semaphore is None:
                outcome = await self._dispatcher.send(channel, recipient, message)
            else:
                async with semaphore:
                    outcome = await self._dispatcher.send(channel, recipient, message)

            attempt = self._ledger.append(DeliveryAttempt(
                alert_id=alert.alert_id,
                org_id=alert.org_id,
                resident_id=alert.resident_id,
                recipient_id=recipient.recipient_id,
                recipient_kind=recipient.kind,
                channel=channel,
                attempt_number=attempt_number,
                status=outcome.status,
                provider_message_id=outcome.provider_id,
                error_message=outcome.error,
                retryable=outcome.retryable,
                recorded_at=self._clock(),
            ))

            if not (outcome.retryable and attempt_number < retry.max_attempts):
                return attempt

            delay = retry.backoff_for(attempt_number)
            logger.info(
                "delivery_retry_scheduled",
                recipient_id=recipient.recipient_id,
                channel=channel.value,
                attempt=attempt_number,
                delay_seconds=delay,
            )
            await self._sleep(delay)
            attempt_number += 1

    def _record_suppressed(
        self,
        alert: AlertEvent,
        recipient: Recipient,
        channel: Channel,
        reason: SuppressionReason,
    ) -> None:
        self._ledger.append(DeliveryAttempt(
            alert_id=alert.alert_id,
            org_id=alert.org_id,
            resident_id=alert.resident_id,
            recipient_id=recipient.recipient_id,
            recipient_kind=recipient.kind,
            channel=channel,
            status=DeliveryStatus.SUPPRESSED,
            suppression_reason=reason,
            recorded_at=self._clock(),
        ))
        logger.info(
            "notification_suppressed",
            recipient_id=recipient.recipient_id,
            channel=channel.value,
            reason=reason.value,
        )

    async def _settle(self, alert: AlertEvent, fallback_reason: str) -> AlertEvent:
        final = self._ledger.final_attempts(alert.alert_id)
        statuses = Counter(a.status for a in final)
        target = settle_state(final)

        self._transition(
            alert,
            target,
            sent=statuses[DeliveryStatus.SENT],
            failed=statuses[DeliveryStatus.FAILED],
            suppressed=statuses[DeliveryStatus.SUPPRESSED],
        )
        alert.completed_at = self._clock()
        logger.info(
            "alert_completed",
            state=target.value,
            sent=statuses[DeliveryStatus.SENT],
            failed=statuses[DeliveryStatus.FAILED],
            suppressed=statuses[DeliveryStatus.SUPPRESSED],
        )

        if alert.detection.requires_immediate_alert and statuses[DeliveryStatus.SENT] == 0:
            await self._page_fallback(alert, fallback_reason)
        else:
            await self._alerts.save(alert)
        return alert

    async def _page_fallback(self, alert: AlertEvent, reason: str) -> None:
        alert.fallback_invoked = True
        alert.fallback_reason = reason
        try:
            page_ref = await self._fallback.page(alert, reason)
        except FallbackUnavailableError as exc:
            logger.critical("fallback_unavailable", reason=reason, error=exc.message)
            self._audit.record(
                AuditEventType.FALLBACK_FAILED,
                org_id=alert.org_id,
                alert_id=alert.alert_id,
                resident_id=alert.resident_id,
                reason=reason,
                error=exc.message,
            )
            await self._alerts.save(alert)
            raise

        logger.warning("fallback_invoked", reason=reason, page_ref=page_ref)
        self._audit.record(
            AuditEventType.FALLBACK_INVOKED,
            org_id=alert.org_id,
            alert_id=alert.alert_id,
            resident_id=alert.resident_id,
            reason=reason,
            page_ref=page_ref,
        )
        await self._alerts.save(alert)

    def _transition(self, alert: AlertEvent, target: AlertState, **metadata: Any) -> None:
        previous = transition(alert, target)
        self._audit.record(
            AuditEventType.ALERT_STATE_CHANGED,
            org_id=alert.org_id,
            alert_id=alert.alert_id,
            resident_id=alert.resident_id,
            from_state=previous.value,
            to_state=target.value,
            **metadata,
        )
