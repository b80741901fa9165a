"""Keyword pattern families for fast-path intent classification.

Each family is a tiered-evidence detector: it scans the lowercased
question for a few vocabulary lists (substring containment, or regex for
time units) and maps the combination of lists that hit to a confidence
band. Families are pure and deterministic so they can be unit-tested
against a fixed example corpus.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from models import QueryIntent


@dataclass(frozen=True)
class ConfidenceBands:
    """Confidence assigned to strong, partial and weak evidence."""

    high: float = 0.9
    medium: float = 0.8
    low: float = 0.6


@dataclass(frozen=True)
class PatternMatch:
    """A single family's verdict on a question."""

    family: str
    intent: QueryIntent
    confidence: float
    matched_patterns: tuple[str, ...] = ()


class PatternFamily(Protocol):
    name: str

    def match(self, question: str) -> PatternMatch | None: ...


def _first_keyword(text: str, keywords: tuple[str, ...], tag: str, tags: list[str]) -> bool:
    """Record the first keyword (in list order) contained in *text*."""
    for keyword in keywords:
        if keyword in text:
            tags.append(f"{tag}:{keyword}")
            return True
    return False


def _all_keywords(text: str, keywords: tuple[str, ...], tag: str, tags: list[str]) -> int:
    """Record every keyword contained in *text* and return how many hit."""
    hits = [keyword for keyword in keywords if keyword in text]
    tags.extend(f"{tag}:{keyword}" for keyword in hits)
    return len(hits)


# ── Workflow status ─────────────────────────────────────────────────────


WORKFLOW_STATUS_INDICATORS = {
    "status": (
        "workflow",
        "pending",
        "in progress",
        "completed",
        "approved",
        "rejected",
        "draft",
        "submitted",
        "review",
        "status",
        "state",
    ),
    "group_by": ("by ", "group", "grouped", "breakdown", "per "),
    "age": ("old", "older than", "aging", "stale", "overdue", "waiting"),
}

WORKFLOW_STATUS_EXAMPLES = {
    "high": [
        "Forms grouped by workflow status",
        "Show assessments by status",
        "Breakdown of pending forms per clinic",
    ],
    "medium": [
        "Pending reviews older than 7 days",
        "Draft forms waiting for approval",
        "Stale submitted forms",
    ],
    "low": [
        "Show all pending forms",
        "List rejected assessments",
    ],
    "no_match": [
        "Average wound area per clinic",
        "Show me all patients",
        "Total visits last month",
    ],
}


@dataclass(frozen=True)
class WorkflowStatusPattern:
    """Questions that filter or group by workflow status.

    status + grouping keyword -> high, status + aging keyword -> medium,
    status alone -> low, no status keyword -> no match.
    """

    bands: ConfidenceBands = field(default_factory=ConfidenceBands)
    name: str = "workflow_status"

    def match(self, question: str) -> PatternMatch | None:
        text = question.lower()
        tags: list[str] = []
        has_status = _first_keyword(text, WORKFLOW_STATUS_INDICATORS["status"], "status", tags)
        has_group = _first_keyword(text, WORKFLOW_STATUS_INDICATORS["group_by"], "groupBy", tags)
        has_age = _first_keyword(text, WORKFLOW_STATUS_INDICATORS["age"], "age", tags)

        if not has_status:
            return None
        if has_group:
            confidence = self.bands.high
        elif has_age:
            confidence = self.bands.medium
        else:
            confidence = self.bands.low
        return PatternMatch(
            self.name, QueryIntent.WORKFLOW_STATUS_MONITORING, confidence, tuple(tags)
        )


# ── Temporal proximity ──────────────────────────────────────────────────


TEMPORAL_PROXIMITY_INDICATORS = {
    "proximity": (
        "at",
        "around",
        "approximately",
        "near",
        "close to",
        "within",
        "by",
        "after",
        "since",
        "roughly",
        "about",
    ),
    "time_units": (
        re.compile(r"(\d+)\s*(?:weeks?|wks?)", re.IGNORECASE),
        re.compile(r"(\d+)\s*(?:months?|mos?)", re.IGNORECASE),
        re.compile(r"(\d+)\s*(?:days?)", re.IGNORECASE),
        re.compile(r"(\d+)\s*(?:years?|yrs?)", re.IGNORECASE),
    ),
    "outcome": (
        "healing",
        "healed",
        "outcome",
        "result",
        "reduction",
        "improvement",
        "measurement",
        "area",
        "size",
        "change",
        "progress",
    ),
}

TEMPORAL_PROXIMITY_EXAMPLES = {
    "high": [
        "What is the healing rate at 4 weeks?",
        "Show me area reduction around 12 weeks",
        "Wounds healed by 8 weeks",
        "Outcome roughly 4 weeks in",
        "Area reduction approximately 12 weeks after treatment",
    ],
    "medium": [
        "Status at 4 weeks",
        "Show me 8 week outcome",
    ],
    "no_match": [
        "Wounds in the last 4 weeks",
        "Show me all patients",
        "Healing trend over time",
    ],
}


@dataclass(frozen=True)
class TemporalProximityPattern:
    """Questions about an outcome at a specific time point, not a range.

    proximity + time unit + outcome -> high, time unit + one of the
    others -> low, no time unit -> no match.
    """

    bands: ConfidenceBands = field(default_factory=ConfidenceBands)
    name: str = "temporal_proximity"

    def match(self, question: str) -> PatternMatch | None:
        text = question.lower()
        tags: list[str] = []
        has_proximity = _first_keyword(
            text, TEMPORAL_PROXIMITY_INDICATORS["proximity"], "proximity", tags
        )

        has_time_unit = False
        for pattern in TEMPORAL_PROXIMITY_INDICATORS["time_units"]:
            found = pattern.search(text)
            if found:
                tags.append(f"timeUnit:{found.group(0)}")
                has_time_unit = True
                break

        has_outcome = _first_keyword(
            text, TEMPORAL_PROXIMITY_INDICATORS["outcome"], "outcome", tags
        )

        if not has_time_unit:
            return None
        if has_proximity and has_outcome:
            confidence = self.bands.high
        elif has_proximity or has_outcome:
            confidence = self.bands.low
        else:
            return None
        return PatternMatch(
            self.name, QueryIntent.TEMPORAL_PROXIMITY_QUERY, confidence, tuple(tags)
        )


# ── Assessment correlation ──────────────────────────────────────────────


ASSESSMENT_CORRELATION_INDICATORS = {
    "anti_join": ("without", "with no", "but no", "missing", "lacking", "absent", "not have"),
    "correlation": ("compare", "mismatch", "discrepanc", "versus", "reconcile", "correlat"),
    "assessment_types": (
        "visit",
        "billing",
        "discharge",
        "intake",
        "assessment",
        "form",
        "documentation",
        "clinical",
        "wound",
        "treatment",
    ),
}

ASSESSMENT_CORRELATION_EXAMPLES = {
    "high": [
        "Patients with visits but no discharge forms",
        "Clinical documentation lacking billing records",
        "Visits without billing",
    ],
    "medium": [
        "Compare intake assessments and discharge forms for discrepancies",
        "Reconcile treatment records versus billing",
    ],
    "no_match": [
        "Show documentation without context",
        "Visits and discharge summaries list",
        "Show me all patients",
    ],
}

CORRELATION_BANDS = ConfidenceBands(high=0.85, medium=0.75, low=0.75)


@dataclass(frozen=True)
class AssessmentCorrelationPattern:
    """Questions about missing or mismatched data across assessment types.

    anti-join keyword + two assessment types -> high, comparison keyword
    + two assessment types -> medium, otherwise no match.
    """

    bands: ConfidenceBands = CORRELATION_BANDS
    name: str = "assessment_correlation"

    def match(self, question: str) -> PatternMatch | None:
        text = question.lower()
        tags: list[str] = []
        has_anti_join = _first_keyword(
            text, ASSESSMENT_CORRELATION_INDICATORS["anti_join"], "antiJoin", tags
        )
        has_correlation = _first_keyword(
            text, ASSESSMENT_CORRELATION_INDICATORS["correlation"], "correlation", tags
        )
        type_count = _all_keywords(
            text, ASSESSMENT_CORRELATION_INDICATORS["assessment_types"], "assessmentType", tags
        )

        if type_count < 2:
            return None
        if has_anti_join:
            confidence = self.bands.high
        elif has_correlation:
            confidence = self.bands.medium
        else:
            return None
        return PatternMatch(
            self.name, QueryIntent.ASSESSMENT_CORRELATION_CHECK, confidence, tuple(tags)
        )


# ── Registry ────────────────────────────────────────────────────────────


def default_patterns(bands: ConfidenceBands | None = None) -> list[PatternFamily]:
    """Build the registered pattern families.

    Args:
        bands: Confidence bands for workflow and temporal families
            (``None`` for the 0.9 / 0.8 / 0.6 defaults).

    Returns:
        Family instances in evaluation order.
    """
    bands = bands or ConfidenceBands()
    return [
        TemporalProximityPattern(bands),
        AssessmentCorrelationPattern(),
        WorkflowStatusPattern(bands),
    ]


def match_patterns(
    question: str, patterns: list[PatternFamily] | None = None
) -> list[PatternMatch]:
    """Run every family and return matches, best confidence first.

    Args:
        question: Raw question text.
        patterns: Families to run (``None`` for ``default_patterns()``).

    Returns:
        Zero or more ``PatternMatch`` objects sorted by descending confidence.
        Ties keep evaluation order.
    """
    families = patterns if patterns is not None else default_patterns()
    matches = [m for m in (family.match(question) for family in families) if m is not None]
    matches.sort(key=lambda m: m.confidence, reverse=True)
    return matches
