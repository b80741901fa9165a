"""Hybrid pattern + model intent classification."""

from .cache import ClassificationCache
from .classifier import IntentClassifier, fallback_result
from .patterns import (
    AssessmentCorrelationPattern,
    ConfidenceBands,
    PatternMatch,
    TemporalProximityPattern,
    WorkflowStatusPattern,
    default_patterns,
    match_patterns,
)

__all__ = [
    "AssessmentCorrelationPattern",
    "ClassificationCache",
    "ConfidenceBands",
    "IntentClassifier",
    "PatternMatch",
    "TemporalProximityPattern",
    "WorkflowStatusPattern",
    "default_patterns",
    "fallback_result",
    "match_patterns",
]
