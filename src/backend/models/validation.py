"""
SQL validation and composition models.
"""

from enum import Enum

from pydantic import BaseModel, Field


class ValidationErrorType(str, Enum):
    """Typed error vocabulary shared by the validator and error classifier."""

    GROUP_BY_VIOLATION = "GROUP_BY_VIOLATION"
    ORDER_BY_VIOLATION = "ORDER_BY_VIOLATION"
    AGGREGATE_VIOLATION = "AGGREGATE_VIOLATION"
    SCHEMA_VIOLATION = "SCHEMA_VIOLATION"
    SYNTAX_ERROR = "syntax_error"
    MISSING_COLUMN = "missing_column"
    JOIN_FAILURE = "join_failure"
    TIMEOUT = "timeout"
    PERMISSION_DENIED = "permission_denied"
    OTHER = "other"


class SQLValidationError(BaseModel):
    """A single structural violation."""

    type: ValidationErrorType
    message: str
    suggestion: str | None = Field(default=None, description="Suggested auto-fix, if any")
    expression: str | None = Field(default=None, description="Offending SQL fragment")


class ValidationMetadata(BaseModel):
    """Parsed clause contents, useful for debugging rejected statements."""

    group_by_expressions: list[str] = Field(default_factory=list)
    order_by_expressions: list[str] = Field(default_factory=list)
    select_aliases: dict[str, str] = Field(
        default_factory=dict, description="Alias (lowercase) -> defining expression"
    )
    has_aggregates: bool = False


class ValidationResult(BaseModel):
    """Outcome of ``SQLValidator.validate``."""

    is_valid: bool
    errors: list[SQLValidationError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    metadata: ValidationMetadata = Field(default_factory=ValidationMetadata)


class CompositionStrategy(str, Enum):
    """Whether a turn's SQL stands alone or builds on its parent."""

    FRESH = "fresh"
    COMPOSED = "composed"


class ConversationTurn(BaseModel):
    """One question/SQL pair in a conversation lineage."""

    sequence_id: int = Field(ge=0, description="Monotonically increasing within a thread")
    question: str
    sql: str
    strategy: CompositionStrategy = CompositionStrategy.FRESH
    parent_sequence_id: int | None = Field(default=None)


class RewriteResult(BaseModel):
    """Result of a best-effort textual SQL rewrite."""

    sql: str
    changed: bool = False
    issues: list[str] = Field(default_factory=list)
