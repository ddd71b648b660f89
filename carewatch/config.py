"""
Pipeline Settings -- Validated Configuration for the Escalation Pipeline.

Every tunable number the pipeline depends on lives here as a validated
pydantic model rather than a module constant: classifier thresholds,
retry budget and backoff, per-channel send timeouts, routine dispatch
concurrency, rendering limits, transport endpoints, and the operational
fallback sink.

The classifier thresholds deserve a note.  The immediate-alert policy is
a set of confidence/severity cut-offs whose provenance is not recorded
anywhere, so they are exposed as parameters with the historical values
as defaults.  Deployments that tune them do so in YAML, and the test
suite pins the behaviour at and around every boundary.

Settings load from YAML with a top-level ``pipeline`` key.  String values
of the form ``env:NAME`` are resolved from the process environment at
load time so secrets never sit in the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from carewatch.errors import ConfigurationError
from carewatch.models import IncidentCategory


# ---------------------------------------------------------------------------
# Classifier thresholds
# ---------------------------------------------------------------------------

class ClassifierThresholds(BaseModel):
    """Cut-offs that turn keyword weights into a detection.

    ``confidence = min(total_weight / weight_divisor, 1.0)``; a transcript
    with at least one keyword match is an incident once confidence reaches
    ``incident_min_confidence``.
    """

    incident_min_confidence: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for a keyword match to count as an incident.",
    )
    weight_divisor: float = Field(
        default=2.0,
        gt=0.0,
        description="Summed keyword weight that maps to confidence 1.0.",
    )
    negative_phrase_boost: float = Field(
        default=0.3,
        ge=0.0,
        description="Weight added when an intensifying phrase ('very upset') is present.",
    )
    negative_sentiment_cutoff: float = Field(
        default=-0.5,
        ge=-1.0,
        le=0.0,
        description="Sentiment scores below this add weight proportional to their magnitude.",
    )
    sentiment_weight: float = Field(
        default=0.2,
        ge=0.0,
        description="Multiplier applied to |sentiment| below the cut-off.",
    )
    immediate_min_high_keywords: int = Field(
        default=2,
        ge=1,
        description="High-severity keyword matches that escalate a HIGH incident to immediate.",
    )
    immediate_categories: list[IncidentCategory] = Field(
        default_factory=lambda: [IncidentCategory.ABUSE_DISCLOSURE],
        description="Categories that make any high/critical incident immediate.",
    )


# ---------------------------------------------------------------------------
# Delivery policy
# ---------------------------------------------------------------------------

class RetryPolicy(BaseModel):
    """Per-channel retry budget for transient transport failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    initial_backoff_seconds: float = Field(default=2.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def backoff_for(self, attempt_number: int) -> float:
        """Delay before the try that follows ``attempt_number``."""
        return self.initial_backoff_seconds * self.backoff_multiplier ** (attempt_number - 1)


class ResolutionRetryPolicy(BaseModel):
    """Backoff for recipient resolution when persistence is unavailable."""

    max_attempts: int = Field(default=5, ge=1)
    initial_backoff_seconds: float = Field(default=1.0, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def backoff_for(self, attempt_number: int) -> float:
        return self.initial_backoff_seconds * self.backoff_multiplier ** (attempt_number - 1)


class ChannelTimeouts(BaseModel):
    """Upper bound on a single transport call, per channel."""

    sms_seconds: float = Field(default=10.0, gt=0.0)
    email_seconds: float = Field(default=10.0, gt=0.0)
    push_seconds: float = Field(default=5.0, gt=0.0)


class DispatchSettings(BaseModel):
    routine_max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Concurrent sends for non-immediate alerts, to respect provider quotas.",
    )


class RenderingSettings(BaseModel):
    app_name: str = Field(default="CareWatch", min_length=1)
    sms_max_length: int = Field(default=160, ge=70)
    push_max_length: int = Field(default=178, ge=40)
    review_url: Optional[str] = Field(
        default=None,
        description="Link to the incident review screen, appended where space allows.",
    )
    display_timezone: str = Field(default="Europe/London")


# ---------------------------------------------------------------------------
# Transports and fallback
# ---------------------------------------------------------------------------

class TransportSettings(BaseModel):
    """Credentials and endpoints for the HTTP transport collaborators."""

    twilio_api_url: str = Field(default="https://api.twilio.com/2010-04-01")
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_from_number: str = Field(default="")
    default_country_code: str = Field(
        default="44",
        description="Country calling code applied to national-format phone numbers.",
    )
    push_gateway_url: str = Field(default="")
    push_gateway_token: str = Field(default="")
    resend_api_url: str = Field(default="https://api.resend.com")
    resend_api_key: str = Field(default="")
    email_from: str = Field(default="CareWatch <alerts@carewatch.invalid>")

    @field_validator("default_country_code")
    @classmethod
    def _digits_only(cls, v: str) -> str:
        if not v.isdigit() or not 1 <= len(v) <= 3:
            raise ValueError("default_country_code must be 1-3 digits")
        return v


class FallbackSettings(BaseModel):
    webhook_url: str = Field(default="")
    webhook_token: str = Field(default="")
    timeout_seconds: float = Field(default=10.0, gt=0.0)


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

class PipelineSettings(BaseModel):
    """All pipeline configuration in one validated object."""

    classifier: ClassifierThresholds = Field(default_factory=ClassifierThresholds)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    resolution_retry: ResolutionRetryPolicy = Field(default_factory=ResolutionRetryPolicy)
    timeouts: ChannelTimeouts = Field(default_factory=ChannelTimeouts)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    rendering: RenderingSettings = Field(default_factory=RenderingSettings)
    transports: TransportSettings = Field(default_factory=TransportSettings)
    fallback: FallbackSettings = Field(default_factory=FallbackSettings)
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log_level '{v}'")
        return v


DEFAULT_SETTINGS = PipelineSettings()
"""Settings used when no file is supplied."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "env:"


def load_settings_from_yaml(path: str | Path) -> PipelineSettings:
    """Load pipeline settings from a YAML file.

    Example::

        pipeline:
          retry:
            max_attempts: 3
          transports:
            twilio_auth_token: "env:TWILIO_AUTH_TOKEN"

    Args:
        path: Path to the YAML file.

    Returns:
        Validated ``PipelineSettings``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the document structure is wrong or an
            ``env:`` reference names an unset variable.
        pydantic.ValidationError: If any value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "pipeline" not in raw:
        raise ConfigurationError("Settings file must contain a top-level 'pipeline' mapping.")

    section = raw["pipeline"] or {}
    if not isinstance(section, dict):
        raise ConfigurationError("'pipeline' must be a mapping.")

    return PipelineSettings.model_validate(_resolve_env(section))


def _resolve_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(v) for v in value]
    if isinstance(value, str) and value.startswith(_ENV_PREFIX):
        name = value[len(_ENV_PREFIX):]
        if name not in os.environ:
            raise ConfigurationError(
                f"Environment variable '{name}' referenced in settings is not set.",
                details={"variable": name},
            )
        return os.environ[name]
    return value
