"""Keyword heuristics scoring how many steps a question needs.

Scores range 0-10. Up to 4 is simple (direct generation), up to 7 is
medium (direct generation with a preview), above that the question is
decomposed into a funnel.
"""

import re

from models import ComplexityAnalysis

SIMPLE_MAX_SCORE = 4
MEDIUM_MAX_SCORE = 7

_MULTI_STEP = re.compile(
    r"\bthen\b|\bafter that\b|\bfollowed by\b|\bfirst\b.*\bthen\b|\balso\b|\badditionally\b"
)
_AGGREGATIONS = (
    r"\baverage\b",
    r"\bmean\b",
    r"\bsum\b",
    r"\btotal\b",
    r"\bcount\b",
    r"\bmax\b",
    r"\bmin\b",
    r"\bpercentage\b",
    r"\brate\b",
)
_COMPARISONS = (
    r"\bcompare\b",
    r"\bversus\b",
    r"\bvs\b",
    r"\bdifference between\b",
    r"\bbetter than\b",
    r"\bworse than\b",
    r"\bhigher than\b",
    r"\blower than\b",
)
_TIME_SERIES = re.compile(
    r"over time|\btrends?\b|\btimeline\b|\bhistory\b|\bweekly\b|\bmonthly\b|\bquarterly\b"
    r"|\byearly\b|\bper (?:day|week|month)\b"
)
_JOINS = re.compile(r"\bfor each\b|\bby patient\b.*\bby wound\b|\bgrouped by\b|\bper\b.*\bper\b")
_ENTITIES = (
    "patient",
    "wound",
    "assessment",
    "clinic",
    "clinician",
    "measurement",
    "visit",
    "treatment",
    "medication",
    "diagnosis",
)


def analyze_complexity(question: str) -> ComplexityAnalysis:
    """Score a question's complexity.

    Multi-step wording adds 3; two or more aggregations, any comparison,
    time-series wording, three or more entities, and join wording each add 2.
    """
    text = question.lower().strip()
    reasons: list[str] = []
    score = 0

    if _MULTI_STEP.search(text):
        score += 3
        reasons.append("Multi-step question detected")

    aggregations = sum(1 for pattern in _AGGREGATIONS if re.search(pattern, text))
    if aggregations >= 2:
        score += 2
        reasons.append(f"Multiple aggregations ({aggregations})")

    if any(re.search(pattern, text) for pattern in _COMPARISONS):
        score += 2
        reasons.append("Comparison detected")

    if _TIME_SERIES.search(text):
        score += 2
        reasons.append("Time series analysis detected")

    entities = sum(1 for entity in _ENTITIES if entity in text)
    if entities >= 3:
        score += 2
        reasons.append(f"Multiple entities detected ({entities})")

    if _JOINS.search(text):
        score += 2
        reasons.append("Complex joins detected")

    score = min(score, 10)
    if score <= SIMPLE_MAX_SCORE:
        level, strategy = "simple", "auto"
    elif score <= MEDIUM_MAX_SCORE:
        level, strategy = "medium", "preview"
    else:
        level, strategy = "complex", "inspect"

    return ComplexityAnalysis(
        score=score,
        level=level,
        strategy=strategy,
        reasons=reasons or ["Simple single-entity query"],
    )
