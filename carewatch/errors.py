"""
Exception hierarchy for the CareWatch escalation pipeline.

Each exception carries a stable ``code`` so that operators can group
failures in logs and audit exports without parsing messages.
"""

from __future__ import annotations

from typing import Any, Optional


class CareWatchError(Exception):
    """Base exception for all pipeline errors."""

    code: str = "CAREWATCH_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class ClassificationError(CareWatchError):
    """Internal scoring fault.  Never escapes ``TranscriptClassifier.classify``."""

    code = "CLASSIFICATION_ERROR"


# ---------------------------------------------------------------------------
# Recipient resolution / persistence
# ---------------------------------------------------------------------------

class RecipientResolutionError(CareWatchError):
    """The persistence collaborator could not produce the recipient list."""

    code = "RECIPIENT_RESOLUTION_ERROR"


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TransportError(CareWatchError):
    """A transport collaborator rejected or failed to deliver a message.

    ``transient`` marks failures worth retrying (timeouts, 5xx, throttling).
    Permanent failures (invalid address, rejected content) are not retried.
    """

    code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        transient: bool = True,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.transient = transient
        self.status_code = status_code


class InvalidAddressError(CareWatchError):
    """A recipient address cannot be used for the requested channel."""

    code = "INVALID_ADDRESS"


class FallbackUnavailableError(CareWatchError):
    """The operational fallback channel could not be reached.

    This is the only fatal condition in the pipeline: a critical incident
    reached no recipient and the on-call sink is down as well.
    """

    code = "FALLBACK_UNAVAILABLE"


# ---------------------------------------------------------------------------
# Alert lifecycle / ledger
# ---------------------------------------------------------------------------

class InvalidTransitionError(CareWatchError):
    """Raised when an alert state transition is not permitted."""

    code = "INVALID_TRANSITION"


class LedgerError(CareWatchError):
    """Raised when a ledger write violates the append-only contract."""

    code = "LEDGER_ERROR"


class DuplicateAttemptError(LedgerError):
    """An attempt with the same (alert, recipient, channel, number) already exists."""

    code = "DUPLICATE_ATTEMPT"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigurationError(CareWatchError):
    """Settings file is missing or structurally invalid."""

    code = "CONFIGURATION_ERROR"
