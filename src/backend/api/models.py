"""
Request and response bodies of the Insight API.

Domain models (``QueryFunnel``, ``SubQuestion``, ``ClassificationResult``,
outcomes) are returned as-is; only request shapes and small wrappers
live here.
"""

from models import SemanticContext, SubQuestionResult, SubQuestionStatus
from pydantic import BaseModel, Field


class AskRequest(BaseModel):
    """Request body for ``POST /api/insights/ask``."""

    question: str = Field(description="Natural-language question")
    scope_id: str = Field(description="Customer or data-scope identifier")
    model_id: str | None = Field(default=None, description="Model deployment override")


class ClarifiedAskRequest(AskRequest):
    """Request body for ``POST /api/insights/ask-with-clarifications``."""

    clarifications: dict[str, str] = Field(
        default_factory=dict,
        description="Answers keyed by clarification id (placeholder, term or 'intent')",
    )


class ClassifyRequest(BaseModel):
    question: str
    scope_id: str
    model_id: str | None = None
    enable_cache: bool = True


class RefineRequest(BaseModel):
    """Request body for ``POST /api/insights/refine``."""

    scope_id: str
    question: str = ""
    current_sql: str
    refinement_request: str
    context: SemanticContext | None = None
    model_id: str | None = None


class CreateFunnelRequest(BaseModel):
    question: str
    scope_id: str
    model_id: str | None = None


class AddSubQuestionRequest(BaseModel):
    question_text: str
    order: int | None = Field(default=None, ge=0)
    depends_on: list[int] = Field(default_factory=list)
    sql_query: str | None = None


class UpdateSubQuestionRequest(BaseModel):
    """Request body for ``PATCH /api/sub-questions/{id}``.

    Fields left unset are not changed. Text and SQL are applied before
    the status transition.
    """

    question_text: str | None = None
    sql_query: str | None = None
    status: SubQuestionStatus | None = None


class GenerateSqlRequest(BaseModel):
    scope_id: str
    model_id: str | None = None


class SubQuestionResultResponse(BaseModel):
    """Cached result of a sub-question, flagged stale when its SQL changed since."""

    sub_question_id: str
    result: SubQuestionResult
    is_stale: bool = False
