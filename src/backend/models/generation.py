"""
SQL generation models.

Shared by the direct-generation path, funnel sub-question generation,
and context-based refinement.
"""

from pydantic import BaseModel, Field


class ClarificationOption(BaseModel):
    label: str
    value: str
    description: str | None = None


class ClarificationQuestion(BaseModel):
    """An open question raised instead of SQL, tagged by semantic."""

    id: str = Field(description="Stable id the caller echoes back with the answer")
    semantic: str = Field(default="", description="Placeholder semantic, e.g. 'assessment_type'")
    question: str
    options: list[ClarificationOption] = Field(default_factory=list)
    allow_custom: bool = True


class GeneratedSql(BaseModel):
    """Output of an ``SqlGenerator``.

    Either ``sql`` is populated, or ``needs_clarification`` is set and
    ``clarifications`` lists what the generator could not decide.
    """

    sql: str = ""
    explanation: str = ""
    validation_notes: str | None = None
    matched_template: str | None = None
    needs_clarification: bool = False
    clarifications: list[ClarificationQuestion] = Field(default_factory=list)
    reasoning: str | None = None
