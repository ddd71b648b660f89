"""
Tests for carewatch.config -- Pipeline Settings.

Covers: default values, field validation, retry backoff arithmetic, YAML
loading (valid, missing file, wrong structure, env: secret references),
and the shipped example settings file.
"""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from carewatch.config import (
    DEFAULT_SETTINGS,
    ClassifierThresholds,
    PipelineSettings,
    RetryPolicy,
    TransportSettings,
    load_settings_from_yaml,
)
from carewatch.errors import ConfigurationError
from carewatch.models import IncidentCategory


# ---------------------------------------------------------------------------
# 1. Defaults
# ---------------------------------------------------------------------------

class TestDefaults:
    def test_delivery_defaults(self):
        assert DEFAULT_SETTINGS.retry.max_attempts == 3
        assert DEFAULT_SETTINGS.timeouts.sms_seconds == 10.0
        assert DEFAULT_SETTINGS.timeouts.email_seconds == 10.0
        assert DEFAULT_SETTINGS.timeouts.push_seconds == 5.0
        assert DEFAULT_SETTINGS.transports.default_country_code == "44"

    def test_classifier_defaults(self):
        thresholds = ClassifierThresholds()
        assert thresholds.incident_min_confidence == 0.4
        assert thresholds.immediate_min_high_keywords == 2
        assert thresholds.immediate_categories == [IncidentCategory.ABUSE_DISCLOSURE]

    def test_backoff_doubles(self):
        policy = RetryPolicy()
        assert [policy.backoff_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


# ---------------------------------------------------------------------------
# 2. Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_confidence_out_of_range(self):
        with pytest.raises(ValidationError):
            ClassifierThresholds(incident_min_confidence=1.5)

    def test_unknown_immediate_category(self):
        with pytest.raises(ValidationError):
            ClassifierThresholds(immediate_categories=["loneliness"])

    def test_country_code_digits_only(self):
        with pytest.raises(ValidationError):
            TransportSettings(default_country_code="+44")

    def test_log_level_normalised(self):
        assert PipelineSettings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            PipelineSettings(log_level="chatty")

    def test_zero_max_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)


# ---------------------------------------------------------------------------
# 3. YAML loading
# ---------------------------------------------------------------------------

class TestYamlLoading:
    def _write_yaml(self, data, tmp_dir: Path) -> Path:
        path = tmp_dir / "settings.yaml"
        with open(path, "w") as f:
            yaml.dump(data, f)
        return path

    def test_load_valid_yaml(self, tmp_path):
        path = self._write_yaml({
            "pipeline": {
                "retry": {"max_attempts": 5},
                "dispatch": {"routine_max_concurrency": 2},
                "classifier": {"immediate_categories": ["abuse-disclosure", "fall"]},
            },
        }, tmp_path)
        settings = load_settings_from_yaml(path)
        assert settings.retry.max_attempts == 5
        assert settings.dispatch.routine_max_concurrency == 2
        assert IncidentCategory.FALL in settings.classifier.immediate_categories
        assert settings.timeouts.push_seconds == 5.0

    def test_empty_pipeline_section_uses_defaults(self, tmp_path):
        settings = load_settings_from_yaml(self._write_yaml({"pipeline": None}, tmp_path))
        assert settings == PipelineSettings()

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_settings_from_yaml("/nonexistent/settings.yaml")

    def test_missing_pipeline_key(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_settings_from_yaml(self._write_yaml({"settings": {}}, tmp_path))

    def test_invalid_value(self, tmp_path):
        path = self._write_yaml({"pipeline": {"retry": {"max_attempts": 0}}}, tmp_path)
        with pytest.raises(ValidationError):
            load_settings_from_yaml(path)

    def test_env_reference_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CW_TEST_TWILIO_TOKEN", "s3cret")
        path = self._write_yaml({
            "pipeline": {"transports": {"twilio_auth_token": "env:CW_TEST_TWILIO_TOKEN"}},
        }, tmp_path)
        assert load_settings_from_yaml(path).transports.twilio_auth_token == "s3cret"

    def test_unset_env_reference(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CW_TEST_MISSING", raising=False)
        path = self._write_yaml({
            "pipeline": {"fallback": {"webhook_token": "env:CW_TEST_MISSING"}},
        }, tmp_path)
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings_from_yaml(path)
        assert exc_info.value.details == {"variable": "CW_TEST_MISSING"}

    def test_example_settings_file(self, monkeypatch):
        for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "PUSH_GATEWAY_TOKEN",
                     "RESEND_API_KEY", "ONCALL_WEBHOOK_TOKEN"):
            monkeypatch.setenv(name, "test")
        sample = Path(__file__).parent.parent / "examples" / "pipeline_settings.yaml"
        settings = load_settings_from_yaml(sample)
        assert settings.rendering.app_name == "CareWatch"
        assert settings.transports.twilio_auth_token == "test"
