"""
Channel message rendering.

One ``AlertEvent`` is rendered once into a ``RenderedMessage`` holding
every channel's text, so SMS, push, and email carry the same facts.
Templates are Jinja2 strings compiled with ``StrictUndefined``; the HTML
environment autoescapes, the plain-text one does not.

Transcripts are never rendered.  Messages carry the severity, the
categories, the matched keywords, and the suggested actions only.
"""

from __future__ import annotations

from typing import Any, Optional
from zoneinfo import ZoneInfo

import structlog
from jinja2 import BaseLoader, Environment, StrictUndefined

from carewatch.config import RenderingSettings
from carewatch.models import AlertEvent, RenderedMessage

logger = structlog.get_logger(__name__)

_ELLIPSIS = "..."

_TITLE = "{% if immediate %}EMERGENCY ALERT{% else %}Incident alert{% endif %}: {{ resident }}"

_SHORT = (
    "{% if immediate %}URGENT {% endif %}INCIDENT ALERT: {{ severity }} severity incident "
    "detected for {{ resident }} ({{ categories }}). - {{ app_name }}"
)

_SUBJECT = (
    "[{{ app_name }}] {% if immediate %}URGENT: {% endif %}"
    "{{ severity | capitalize }} incident for {{ resident }}"
)

_EMAIL_TEXT = """\
{% if immediate %}URGENT: this incident needs immediate attention.

{% endif %}A {{ severity }} severity incident was detected for {{ resident }} at {{ detected_at }}.

Categories: {{ categories }}
{% if keywords %}Keywords: {{ keywords | join(", ") }}
{% endif %}
{% if actions %}Suggested actions:
{% for action in actions %}  - {{ action }}
{% endfor %}{% endif %}{% if review_url %}
Review the incident: {{ review_url }}
{% endif %}
- {{ app_name }}
"""

_EMAIL_HTML = """\
<html><body>
{% if immediate %}<p><strong>URGENT: this incident needs immediate attention.</strong></p>
{% endif %}<p>A <strong>{{ severity }}</strong> severity incident was detected for
<strong>{{ resident }}</strong> at {{ detected_at }}.</p>
<p>Categories: {{ categories }}</p>
{% if keywords %}<p>Keywords: {{ keywords | join(", ") }}</p>
{% endif %}{% if actions %}<p>Suggested actions:</p>
<ul>
{% for action in actions %}<li>{{ action }}</li>
{% endfor %}</ul>
{% endif %}{% if review_url %}<p><a href="{{ review_url }}">Review the incident</a></p>
{% endif %}<p>{{ app_name }}</p>
</body></html>
"""


class MessageRenderer:
    """Renders alerts into channel text using the configured limits."""

    def __init__(self, settings: Optional[RenderingSettings] = None) -> None:
        self._settings = settings or RenderingSettings()
        self._zone = ZoneInfo(self._settings.display_timezone)
        self._text_env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        self._html_env = Environment(
            loader=BaseLoader(),
            autoescape=True,
            undefined=StrictUndefined,
        )
        self._title = self._text_env.from_string(_TITLE)
        self._short = self._text_env.from_string(_SHORT)
        self._subject = self._text_env.from_string(_SUBJECT)
        self._email_text = self._text_env.from_string(_EMAIL_TEXT)
        self._email_html = self._html_env.from_string(_EMAIL_HTML)

    @property
    def short_text_limit(self) -> int:
        """SMS and push share one body, so it obeys the tighter limit."""
        return min(self._settings.sms_max_length, self._settings.push_max_length)

    def render(self, alert: AlertEvent, resident_name: Optional[str] = None) -> RenderedMessage:
        """Render every channel's text for ``alert``.

        Args:
            alert: The alert being dispatched.
            resident_name: Display name; falls back to "your resident"
                when the caller does not know it.
        """
        variables = self._variables(alert, resident_name)
        message = RenderedMessage(
            title=self._title.render(**variables),
            short_text=truncate(self._short.render(**variables), self.short_text_limit),
            email_subject=" ".join(self._subject.render(**variables).split()),
            email_html=self._email_html.render(**variables),
            email_text=self._email_text.render(**variables),
        )
        logger.debug("alert_rendered", alert_id=alert.alert_id, short_chars=len(message.short_text))
        return message

    def _variables(self, alert: AlertEvent, resident_name: Optional[str]) -> dict[str, Any]:
        detection = alert.detection
        categories = sorted(c.value for c in detection.categories) or ["unspecified"]
        return {
            "app_name": self._settings.app_name,
            "resident": resident_name or "your resident",
            "immediate": detection.requires_immediate_alert,
            "severity": detection.severity.value,
            "categories": ", ".join(categories),
            "keywords": list(detection.detected_keywords),
            "actions": list(detection.suggested_actions),
            "detected_at": alert.created_at.astimezone(self._zone).strftime("%d %b %Y %H:%M %Z"),
            "review_url": self._settings.review_url,
        }


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to ``limit`` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - len(_ELLIPSIS)].rstrip() + _ELLIPSIS
