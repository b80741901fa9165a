"""
Orchestration result models.

``OrchestrationResult`` is a discriminated union over the five ways an
``ask`` call can end. Callers switch on ``mode``.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from .classification import ClassificationResult
from .funnel import QueryFunnel, SubQuestion
from .generation import ClarificationQuestion
from .semantic import FilterMetrics, SemanticContext
from .templates import TemplateCandidate
from .validation import ValidationResult

StepStatus = Literal["pending", "running", "complete", "error"]


class ThinkingStep(BaseModel):
    """A user-visible progress step recorded during orchestration."""

    id: str
    label: str
    status: StepStatus = "pending"
    detail: str | None = None
    duration_ms: int | None = None


class ComplexityAnalysis(BaseModel):
    """Heuristic complexity of a question."""

    score: int = Field(ge=0, le=10)
    level: Literal["simple", "medium", "complex"]
    strategy: Literal["auto", "preview", "inspect"]
    reasons: list[str] = Field(default_factory=list)


class _OutcomeBase(BaseModel):
    question: str
    classification: ClassificationResult | None = None
    thinking: list[ThinkingStep] = Field(default_factory=list)


class TemplateOutcome(_OutcomeBase):
    mode: Literal["template"] = "template"
    sql: str
    explanation: str = ""
    template: TemplateCandidate
    bindings: dict[str, Any] = Field(default_factory=dict)
    validation: ValidationResult | None = None


class DirectOutcome(_OutcomeBase):
    mode: Literal["direct"] = "direct"
    sql: str
    explanation: str = ""
    context: SemanticContext | None = None
    filter_metrics: FilterMetrics = Field(default_factory=FilterMetrics)
    validation: ValidationResult | None = None
    template_suggestions: list[TemplateCandidate] = Field(default_factory=list)
    complexity: ComplexityAnalysis | None = None


class FunnelOutcome(_OutcomeBase):
    mode: Literal["funnel"] = "funnel"
    funnel: QueryFunnel
    next_sub_question: SubQuestion | None = Field(
        default=None, description="First sub-question not yet completed"
    )
    complexity: ComplexityAnalysis | None = None


class ClarificationOutcome(_OutcomeBase):
    mode: Literal["clarification"] = "clarification"
    clarifications: list[ClarificationQuestion] = Field(default_factory=list)
    reasoning: str | None = None
    partial_context: SemanticContext | None = None
    template_suggestions: list[TemplateCandidate] = Field(default_factory=list)


class ErrorOutcome(_OutcomeBase):
    mode: Literal["error"] = "error"
    error: str
    error_type: str = "other"
    sql: str | None = None
    validation: ValidationResult | None = None


OrchestrationResult = Annotated[
    TemplateOutcome | DirectOutcome | FunnelOutcome | ClarificationOutcome | ErrorOutcome,
    Field(discriminator="mode"),
]
