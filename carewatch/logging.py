"""
Structured logging for the escalation pipeline.

All modules log through ``structlog.get_logger(__name__)`` using
event-name messages (``logger.info("alert_created", alert_id=...)``).
Transcripts and recipient contact details are never passed to the logger;
only identifiers, channels, statuses, and counts are.

Call ``configure_logging()`` once at process start.  Tests leave structlog
unconfigured so that ``structlog.testing.capture_logs`` can intercept
events.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    service_name: str = "carewatch",
) -> None:
    """Configure structlog processors and the minimum log level.

    Args:
        level: Minimum level name (``DEBUG`` .. ``CRITICAL``).
        fmt: ``"json"`` for machine-readable output, anything else for the
            coloured console renderer used in local development.
        service_name: Value of the ``service`` key on every event.
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service(service_name),
    ]
    if fmt == "json":
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_alert_context(alert_id: str, resident_id: str) -> None:
    """Attach the alert being processed to every log event of this task."""
    structlog.contextvars.bind_contextvars(alert_id=alert_id, resident_id=resident_id)


def clear_alert_context() -> None:
    structlog.contextvars.unbind_contextvars("alert_id", "resident_id")


def _add_service(service_name: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict["service"] = service_name
        return event_dict
    return processor
