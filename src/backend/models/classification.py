"""
Intent classification models.

These models describe the outcome of classifying a user question into
one of the supported analytical intent shapes.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QueryIntent(str, Enum):
    """Closed set of analytical question shapes.

    New members may be added; ``LEGACY_UNKNOWN`` is the degraded fallback.
    """

    AGGREGATION_BY_CATEGORY = "aggregation_by_category"
    TIME_SERIES_TREND = "time_series_trend"
    TEMPORAL_PROXIMITY_QUERY = "temporal_proximity_query"
    ASSESSMENT_CORRELATION_CHECK = "assessment_correlation_check"
    WORKFLOW_STATUS_MONITORING = "workflow_status_monitoring"
    LATEST_PER_ENTITY = "latest_per_entity"
    AS_OF_STATE = "as_of_state"
    TOP_K = "top_k"
    PIVOT = "pivot"
    UNPIVOT = "unpivot"
    NOTE_COLLECTION = "note_collection"
    JOIN_ANALYSIS = "join_analysis"
    LEGACY_UNKNOWN = "legacy_unknown"


INTENT_DESCRIPTIONS: dict[QueryIntent, str] = {
    QueryIntent.AGGREGATION_BY_CATEGORY: "Count/sum/average grouped by categories",
    QueryIntent.TIME_SERIES_TREND: "Trends over time periods",
    QueryIntent.TEMPORAL_PROXIMITY_QUERY: (
        'Outcomes at a specific time point (e.g., "at 4 weeks", "around 12 weeks")'
    ),
    QueryIntent.ASSESSMENT_CORRELATION_CHECK: (
        'Missing or mismatched data across assessment types (e.g., "visits without billing")'
    ),
    QueryIntent.WORKFLOW_STATUS_MONITORING: (
        'Filter or group by workflow status/state (e.g., "forms by status")'
    ),
    QueryIntent.LATEST_PER_ENTITY: "Most recent record per entity",
    QueryIntent.AS_OF_STATE: "State at a specific date",
    QueryIntent.TOP_K: "Top/bottom N results",
    QueryIntent.PIVOT: "Transform rows to columns",
    QueryIntent.UNPIVOT: "Transform columns to rows",
    QueryIntent.NOTE_COLLECTION: "Collect free-text notes or comments",
    QueryIntent.JOIN_ANALYSIS: "Combine multiple data sources",
    QueryIntent.LEGACY_UNKNOWN: "Unknown or unclassified query type",
}


ClassificationMethod = Literal["pattern", "ai", "fallback"]


class Question(BaseModel):
    """A question as submitted by the user. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(description="Raw question text")
    thread_id: str | None = Field(default=None, description="Owning conversation thread")
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Question text is required")
        return value


class ClassificationResult(BaseModel):
    """Outcome of a single ``classify`` call."""

    intent: QueryIntent = Field(description="Classified intent")
    confidence: float = Field(ge=0.0, le=1.0, description="Confidence in [0, 1]")
    method: ClassificationMethod = Field(description="How the intent was determined")
    matched_patterns: list[str] = Field(
        default_factory=list,
        description="Pattern tags such as 'status:pending' (pattern method only)",
    )
    reasoning: str | None = Field(default=None, description="Model explanation or failure reason")
    latency_ms: float = Field(default=0.0, description="Time spent classifying")


class ClassificationOptions(BaseModel):
    """Per-call options for ``IntentClassifier.classify``."""

    model_id: str | None = Field(default=None, description="Override the routed model")
    enable_cache: bool = Field(default=True)
    timeout_seconds: float | None = Field(
        default=None, description="Override the configured model timeout"
    )
