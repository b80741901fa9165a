"""
Query template catalog models.

Templates are pre-validated SQL statements published to the catalog
with keywords, example questions, and usage history.
"""

from typing import Any

from pydantic import BaseModel, Field, computed_field

DEFAULT_SUCCESS_RATE = 0.5


class TemplatePlaceholder(BaseModel):
    """A slot in a template's SQL that must be bound before execution."""

    name: str = Field(description="Placeholder name matching {{name}} in sql_template")
    semantic: str = Field(
        default="text",
        description="Category of value, e.g. 'assessment_type', 'time_window', 'status'",
    )
    description: str = Field(default="")
    required: bool = Field(default=True)
    default_value: Any = Field(default=None)
    options: list[str] = Field(
        default_factory=list, description="Known values the placeholder may take"
    )


class QueryTemplate(BaseModel):
    """A published template from the catalog."""

    id: str = Field(description="Template identifier")
    name: str = Field(description="Human-readable template name")
    intent: str = Field(default="", description="Intent vocabulary key")
    description: str = Field(default="")
    status: str = Field(default="approved", description="Only 'approved' templates are matched")
    sql_template: str = Field(description="SQL with {{placeholder}} tokens")
    keywords: list[str] = Field(default_factory=list)
    question_examples: list[str] = Field(default_factory=list)
    placeholders: list[TemplatePlaceholder] = Field(default_factory=list)
    success_count: int = Field(default=0, ge=0)
    usage_count: int = Field(default=0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        """Successful executions over total executions, 0.5 without history."""
        if self.usage_count == 0:
            return DEFAULT_SUCCESS_RATE
        return min(self.success_count / self.usage_count, 1.0)


class TemplateCandidate(BaseModel):
    """A template scored against one question."""

    template: QueryTemplate
    base_score: float = Field(description="Keyword/example/intent score before weighting")
    matched_keywords: list[str] = Field(default_factory=list)
    matched_example: str | None = Field(default=None)
    example_similarity: float = Field(default=0.0)
    success_rate: float = Field(default=DEFAULT_SUCCESS_RATE)
    composite_score: float = Field(description="Weighted score used for ranking")


class TemplateMatchResult(BaseModel):
    """Ranked matching outcome for a question."""

    applied: bool = Field(description="Whether the best candidate clears the application threshold")
    best: TemplateCandidate | None = Field(default=None)
    suggestions: list[TemplateCandidate] = Field(
        default_factory=list, description="Candidates above the suggestion threshold, best first"
    )
    confidence: float = Field(default=0.0, description="Composite score of the best candidate")
    message: str = Field(default="")
