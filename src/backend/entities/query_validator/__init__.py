"""Query Validator package for validating and rewriting SQL before execution."""

from entities.shared.error_recovery import classify_error

from .composer import (
    PREVIOUS_RESULT,
    compose,
    compose_turn,
    enforce_row_limit,
    fix_order_by_aliases,
    qualify_tables,
    validate_lineage,
)
from .validator import SQLValidator

__all__ = [
    "PREVIOUS_RESULT",
    "SQLValidator",
    "classify_error",
    "compose",
    "compose_turn",
    "enforce_row_limit",
    "fix_order_by_aliases",
    "qualify_tables",
    "validate_lineage",
]
