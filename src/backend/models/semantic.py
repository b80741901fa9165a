"""
Semantic context models.

A ``SemanticContext`` is what the metadata provider discovers for a
question: the forms and fields involved, terminology bindings, join
paths, and any time range or filters. It is mutated during
clarification and refinement, so it is deliberately not frozen.
"""

from typing import Any

from pydantic import BaseModel, Field

from .classification import QueryIntent


class FieldBinding(BaseModel):
    """A concrete form field a term may refer to."""

    form: str = Field(description="Form or table name")
    field: str = Field(description="Field or column name")
    semantic: str = Field(default="", description="Semantic concept, e.g. 'assessment_type'")
    value: str | None = Field(default=None, description="Bound value for filter-style terms")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class TermBinding(BaseModel):
    """A user term and every binding the metadata provider found for it."""

    term: str
    semantic: str = Field(default="", description="Placeholder semantic the term fills")
    candidates: list[FieldBinding] = Field(default_factory=list)

    @property
    def is_ambiguous(self) -> bool:
        return len(self.candidates) > 1


class JoinPath(BaseModel):
    """Join between two forms discovered from the schema."""

    left: str
    right: str
    condition: str = Field(description="ON clause, e.g. 'a.patient_id = b.patient_id'")


class TimeRange(BaseModel):
    """Relative time window, e.g. the last 3 months."""

    unit: str = Field(default="month", description="DATEADD unit: day, week, month, year")
    value: int = Field(default=1, ge=0)


class FilterSpec(BaseModel):
    """A single filter predicate pending resolution against a field."""

    field: str = Field(description="Field the filter applies to, may be unresolved")
    operator: str = Field(default="=")
    value: Any = Field(default=None)
    resolved: bool = Field(default=False)


class SemanticContext(BaseModel):
    """Everything the SQL generator needs beyond the raw question."""

    question: str = Field(default="")
    intent: QueryIntent = Field(default=QueryIntent.LEGACY_UNKNOWN)
    forms: list[str] = Field(default_factory=list)
    fields: list[str] = Field(default_factory=list)
    terminology: list[TermBinding] = Field(default_factory=list)
    join_paths: list[JoinPath] = Field(default_factory=list)
    time_range: TimeRange | None = Field(default=None)
    filters: list[FilterSpec] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    clarifications: dict[str, str] = Field(
        default_factory=dict, description="Answers already supplied by the user, keyed by id"
    )

    def ambiguous_terms(self) -> list[TermBinding]:
        """Terms that still have more than one plausible binding.

        A term is considered resolved once a clarification answer keyed
        by the term itself has been merged in.
        """
        return [
            binding
            for binding in self.terminology
            if binding.is_ambiguous and binding.term not in self.clarifications
        ]


class FilterMetrics(BaseModel):
    """Filter resolution counts reported alongside direct results."""

    total: int = 0
    resolved: int = 0
    unresolved: int = 0

    @classmethod
    def from_context(cls, context: SemanticContext) -> "FilterMetrics":
        resolved = sum(1 for f in context.filters if f.resolved)
        return cls(
            total=len(context.filters),
            resolved=resolved,
            unresolved=len(context.filters) - resolved,
        )
