"""
Conversational refinement models.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .semantic import SemanticContext

SqlModificationType = Literal["add_column", "change_limit", "change_filter", "change_timerange"]


class SqlModification(BaseModel):
    """A direct edit requested by the refinement model."""

    type: SqlModificationType
    details: dict[str, Any] = Field(default_factory=dict)


class RefinementPlan(BaseModel):
    """Constrained JSON the refinement model must return."""

    explanation: str = ""
    modified_context: SemanticContext | None = Field(default=None, alias="modifiedContext")
    sql_modifications: SqlModification | None = Field(default=None, alias="sqlModifications")
    change_explanation: str | None = Field(default=None, alias="changeExplanation")

    model_config = ConfigDict(populate_by_name=True)


class RefinementResult(BaseModel):
    """Outcome of ``Refiner.refine``."""

    explanation: str
    new_sql: str | None = None
    sql_changed: bool = False
    change_explanation: str | None = None
