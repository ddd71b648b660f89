"""
Transcript Classifier -- Incident Scoring for Completed Interactions.

Scores a resident's transcript for incident likelihood, severity, and
category using a weighted phrase lexicon.  The classifier is a pure,
deterministic function of its input: no I/O, no clock, no randomness.

**Scoring model:**

* Every lexicon phrase that appears as a whole word or phrase in the
  lower-cased transcript contributes its weight, its category, and its
  severity.
* Intensifying phrases ("very upset", "in tears") add a fixed boost, and
  a strongly negative upstream sentiment score adds weight in proportion
  to its magnitude.
* ``confidence = min(total_weight / weight_divisor, 1.0)``.
* A transcript is an incident once it has at least one match and its
  confidence reaches ``incident_min_confidence``.  Severity is the most
  severe matched phrase.
* An incident needs an immediate alert when it is high or critical
  severity and either is critical, has several high-severity matches, or
  falls in one of the configured immediate categories.

**Failure model:** ``classify`` never raises.  An internal fault is logged
as ``classifier_fault`` and degraded to a no-incident detection whose
``classifier_error`` is populated, so a fault is never mistaken for a
resident who is fine.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from carewatch.config import ClassifierThresholds
from carewatch.models import IncidentCategory, IncidentDetection, Severity

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Lexicon
# ---------------------------------------------------------------------------

class LexiconEntry(BaseModel):
    """One scored phrase.  ``category`` must belong to the closed vocabulary."""

    model_config = ConfigDict(frozen=True)

    phrase: str = Field(..., min_length=1)
    category: IncidentCategory
    severity: Severity
    weight: float = Field(..., gt=0.0, le=1.0)


def _entries(category: IncidentCategory, severity: Severity, weight: float, *phrases: str) -> list[LexiconEntry]:
    return [
        LexiconEntry(phrase=p, category=category, severity=severity, weight=weight)
        for p in phrases
    ]


_FALL = IncidentCategory.FALL
_MEDICAL = IncidentCategory.MEDICAL
_DISTRESS = IncidentCategory.DISTRESS
_CONFUSION = IncidentCategory.CONFUSION
_ABUSE = IncidentCategory.ABUSE_DISCLOSURE
_OTHER = IncidentCategory.OTHER

DEFAULT_LEXICON: tuple[LexiconEntry, ...] = tuple(
    _entries(_FALL, Severity.HIGH, 0.9, "fall", "fell", "fallen")
    + _entries(_FALL, Severity.MEDIUM, 0.7, "trip", "tripped", "slip", "slipped")
    + _entries(_FALL, Severity.CRITICAL, 1.0, "can't get up", "cannot get up", "on the floor")
    + _entries(_MEDICAL, Severity.MEDIUM, 0.6, "pain", "hurt", "hurting", "bruise", "bruised")
    + _entries(_MEDICAL, Severity.LOW, 0.4, "ache", "aching", "sore")
    + _entries(_MEDICAL, Severity.HIGH, 0.8, "injury", "injured", "wound", "blood")
    + _entries(_MEDICAL, Severity.MEDIUM, 0.7, "cut")
    + _entries(_MEDICAL, Severity.CRITICAL, 1.0, "bleeding", "bleed", "fracture")
    + _entries(_MEDICAL, Severity.CRITICAL, 0.9, "broken")
    + _entries(
        _MEDICAL, Severity.CRITICAL, 1.0,
        "choke", "choking", "can't breathe", "difficulty breathing", "chest pain",
        "seizure", "unconscious", "collapsed", "wrong medication",
    )
    + _entries(_MEDICAL, Severity.HIGH, 0.9, "medication error", "adverse reaction")
    + _entries(_MEDICAL, Severity.MEDIUM, 0.6, "missed medication")
    + _entries(_DISTRESS, Severity.LOW, 0.4, "upset")
    + _entries(_DISTRESS, Severity.MEDIUM, 0.6, "distressed", "agitated")
    + _entries(_DISTRESS, Severity.MEDIUM, 0.5, "crying", "angry")
    + _entries(
        _DISTRESS, Severity.HIGH, 0.8,
        "aggressive", "hit", "hitting", "kick", "kicking", "bite", "biting",
    )
    + _entries(_DISTRESS, Severity.CRITICAL, 1.0, "violent")
    + _entries(_CONFUSION, Severity.MEDIUM, 0.5, "confused", "confusion")
    + _entries(_CONFUSION, Severity.MEDIUM, 0.6, "disoriented", "wandering")
    + _entries(_CONFUSION, Severity.CRITICAL, 1.0, "absconded", "gone missing")
    + _entries(_ABUSE, Severity.CRITICAL, 1.0, "abuse", "abused", "neglect", "neglected")
    + _entries(_OTHER, Severity.MEDIUM, 0.5, "refuse", "refused", "refusing")
    + _entries(_OTHER, Severity.MEDIUM, 0.6, "won't take", "won't eat")
)

NEGATIVE_PHRASES: tuple[str, ...] = (
    "very upset",
    "extremely distressed",
    "in tears",
    "won't stop crying",
    "completely refused",
    "severely agitated",
    "highly confused",
    "very aggressive",
)

# First matching category (in this order) picks the suggested actions.
_ACTION_PRECEDENCE: tuple[IncidentCategory, ...] = (
    _ABUSE, _MEDICAL, _FALL, _DISTRESS, _CONFUSION, _OTHER,
)

_SUGGESTED_ACTIONS: dict[IncidentCategory, list[str]] = {
    _ABUSE: [
        "Follow safeguarding procedures",
        "Notify the safeguarding lead",
        "Contact the local authority if required",
        "Secure evidence and documentation",
    ],
    _MEDICAL: [
        "Assess the resident immediately",
        "Call 999 if breathing, bleeding, or consciousness is affected",
        "Contact the GP or 111 for advice",
        "Document all actions taken",
    ],
    _FALL: [
        "Check on the resident and assess for injury",
        "Do not lift the resident if injury is suspected",
        "Complete a body map and incident report",
        "Notify family and the care manager",
    ],
    _DISTRESS: [
        "Ensure the safety of the resident and others",
        "De-escalate calmly and offer reassurance",
        "Review the care plan and known triggers",
    ],
    _CONFUSION: [
        "Confirm the resident's whereabouts",
        "Provide reassurance and orientation",
        "Monitor closely for further changes",
    ],
    _OTHER: [
        "Review the interaction",
        "Document the concern and inform the care team",
    ],
}

_DEFAULT_ACTIONS = ["Assess the situation", "Document incident details"]

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'"})


def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(r"(?<![\w'])" + re.escape(phrase.lower()) + r"(?![\w'])")


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class TranscriptClassifier:
    """Keyword-weighted incident classifier.

    Args:
        thresholds: Scoring cut-offs; defaults to ``ClassifierThresholds()``.
        extra_entries: Additional lexicon entries (models or mappings).
            Mappings are validated, so an unknown category raises
            ``pydantic.ValidationError`` here rather than being coerced.
    """

    def __init__(
        self,
        thresholds: Optional[ClassifierThresholds] = None,
        extra_entries: Iterable[LexiconEntry | dict] = (),
    ) -> None:
        self._thresholds = thresholds or ClassifierThresholds()
        entries = list(DEFAULT_LEXICON)
        for entry in extra_entries:
            entries.append(entry if isinstance(entry, LexiconEntry) else LexiconEntry.model_validate(entry))
        self._lexicon = [(entry, _phrase_pattern(entry.phrase)) for entry in entries]
        self._negative = [_phrase_pattern(p) for p in NEGATIVE_PHRASES]

    @property
    def thresholds(self) -> ClassifierThresholds:
        return self._thresholds

    def classify(self, transcript: str, sentiment_score: Optional[float] = None) -> IncidentDetection:
        """Score one transcript.  Never raises.

        Args:
            transcript: Raw transcript text.  Empty or blank text scores as
                no incident with confidence 0.
            sentiment_score: Optional upstream sentiment in [-1, 1].

        Returns:
            An ``IncidentDetection``.  On an internal fault, a no-incident
            detection with ``classifier_error`` set.
        """
        try:
            return self._score(transcript, sentiment_score)
        except Exception as exc:
            logger.error(
                "classifier_fault",
                error_type=type(exc).__name__,
                transcript_chars=len(transcript) if isinstance(transcript, str) else None,
                exc_info=True,
            )
            return IncidentDetection.no_incident(
                classifier_error=f"{type(exc).__name__}: {exc}"
            )

    def _score(self, transcript: str, sentiment_score: Optional[float]) -> IncidentDetection:
        if not transcript or not transcript.strip():
            return IncidentDetection.no_incident()

        t = self._thresholds
        text = transcript.translate(_APOSTROPHES).lower()

        keywords: list[str] = []
        categories: set[IncidentCategory] = set()
        max_severity = Severity.LOW
        total_weight = 0.0
        high_matches = 0

        for entry, pattern in self._lexicon:
            if entry.phrase in keywords or not pattern.search(text):
                continue
            keywords.append(entry.phrase)
            categories.add(entry.category)
            total_weight += entry.weight
            if entry.severity.is_urgent:
                high_matches += 1
            if entry.severity.rank > max_severity.rank:
                max_severity = entry.severity

        if any(p.search(text) for p in self._negative):
            total_weight += t.negative_phrase_boost

        if sentiment_score is not None and sentiment_score < t.negative_sentiment_cutoff:
            total_weight += abs(sentiment_score) * t.sentiment_weight

        confidence = round(min(total_weight / t.weight_divisor, 1.0), 2)
        is_incident = bool(keywords) and confidence >= t.incident_min_confidence
        severity = max_severity if is_incident else Severity.LOW

        requires_immediate = is_incident and severity.is_urgent and (
            severity is Severity.CRITICAL
            or high_matches >= t.immediate_min_high_keywords
            or bool(categories.intersection(t.immediate_categories))
        )

        return IncidentDetection(
            is_incident=is_incident,
            confidence=confidence,
            severity=severity,
            categories=frozenset(categories),
            detected_keywords=keywords,
            requires_immediate_alert=requires_immediate,
            suggested_actions=_suggest_actions(categories) if is_incident else [],
        )

    def analyze_history(self, transcripts: Iterable[str]) -> "HistoryAnalysis":
        """Classify a run of transcripts and surface recurring keywords.

        A keyword is *trending* when it appears in two or more transcripts;
        trending keywords are ordered by frequency, then first appearance.
        """
        detections = [self.classify(text) for text in transcripts]
        counts: Counter[str] = Counter()
        for detection in detections:
            counts.update(dict.fromkeys(detection.detected_keywords, 1))
        trending = [kw for kw, n in counts.most_common() if n >= 2]
        return HistoryAnalysis(trending_keywords=trending, detections=detections)


class HistoryAnalysis(BaseModel):
    trending_keywords: list[str] = Field(default_factory=list)
    detections: list[IncidentDetection] = Field(default_factory=list)


def _suggest_actions(categories: set[IncidentCategory]) -> list[str]:
    for category in _ACTION_PRECEDENCE:
        if category in categories:
            return list(_SUGGESTED_ACTIONS[category])
    return list(_DEFAULT_ACTIONS)
