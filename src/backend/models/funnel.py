"""
Funnel decomposition models.

A funnel owns an ordered list of sub-questions. Each sub-question moves
through a small state machine and may carry the result of its last
execution along with the SQL that produced it.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid4().hex


class SubQuestionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FunnelStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class SubQuestionResult(BaseModel):
    """Cached rows from the last execution of a sub-question."""

    columns: list[str] = Field(default_factory=list)
    rows: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    sql: str = Field(description="SQL that produced these rows")
    executed_at: datetime = Field(default_factory=_now)


class SubQuestion(BaseModel):
    """One independently resolvable step of a funnel."""

    id: str = Field(default_factory=_new_id)
    funnel_id: str
    order: int = Field(ge=0, description="Caller-assigned position, unique within the funnel")
    question_text: str
    depends_on: list[int] = Field(
        default_factory=list, description="Orders of the steps this one builds on"
    )
    sql_query: str | None = None
    sql_explanation: str | None = None
    sql_validation_notes: str | None = None
    sql_matched_template: str | None = None
    status: SubQuestionStatus = SubQuestionStatus.PENDING
    result: SubQuestionResult | None = None
    last_error: str | None = None
    last_error_type: str | None = None
    last_executed_at: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_now)
    modified_at: datetime = Field(default_factory=_now)


class QueryFunnel(BaseModel):
    """A compound question decomposed into ordered sub-questions."""

    id: str = Field(default_factory=_new_id)
    scope_id: str
    original_question: str
    matched_template: str | None = None
    status: FunnelStatus = FunnelStatus.ACTIVE
    sub_questions: list[SubQuestion] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    modified_at: datetime = Field(default_factory=_now)


class DecomposedStep(BaseModel):
    """One step as returned by the decomposition model."""

    step: int = Field(ge=1)
    question: str
    depends_on: list[int] = Field(default_factory=list)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_depends_on(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, int):
            return [value]
        return value


class Decomposition(BaseModel):
    """Model response for a funnel decomposition request."""

    original_question: str
    matched_template: str | None = None
    sub_questions: list[DecomposedStep] = Field(default_factory=list)

    @field_validator("matched_template", mode="before")
    @classmethod
    def _none_string(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip().lower() in ("", "none", "null"):
            return None
        return value
