"""Error recovery helpers for generation and execution failures.

Pure functions that classify free-text database errors, build
user-friendly error messages, and decide whether a failure could be
resolved by asking the user for more detail.
"""

from models import SQLValidationError, ValidationErrorType

# ── Error classification patterns ────────────────────────────────────────

# Checked in this order; the first family with a hit wins.
_ERROR_PATTERNS: list[tuple[ValidationErrorType, tuple[str, ...]]] = [
    (ValidationErrorType.TIMEOUT, ("timeout", "timed out", "query cancelled", "deadline")),
    (
        ValidationErrorType.PERMISSION_DENIED,
        ("permission", "denied", "not authorized", "unauthorized", "login failed"),
    ),
    (
        ValidationErrorType.MISSING_COLUMN,
        ("invalid column", "unknown column", "column not found", "no such column"),
    ),
    (
        ValidationErrorType.JOIN_FAILURE,
        ("could not be bound", "ambiguous column", "join condition", "invalid object name"),
    ),
    (
        ValidationErrorType.SYNTAX_ERROR,
        ("syntax", "parse error", "incorrect", "unexpected token", "invalid sql"),
    ),
]

_USER_MESSAGES: dict[ValidationErrorType, str] = {
    ValidationErrorType.TIMEOUT: (
        "The query took too long to run. Try narrowing the time range or adding filters."
    ),
    ValidationErrorType.PERMISSION_DENIED: (
        "You don't have access to some of the data this question needs."
    ),
    ValidationErrorType.MISSING_COLUMN: (
        "The query referenced a field that doesn't exist. Could you rephrase which data you need?"
    ),
    ValidationErrorType.JOIN_FAILURE: (
        "I couldn't connect the data sources this question needs. "
        "Try asking about one form at a time."
    ),
    ValidationErrorType.SYNTAX_ERROR: (
        "I had trouble constructing a valid query for your request. "
        "Could you rephrase your question or be more specific about what data you need?"
    ),
}

# Structural violations a user can typically resolve by rephrasing.
_RECOVERABLE_TYPES = {
    ValidationErrorType.GROUP_BY_VIOLATION,
    ValidationErrorType.ORDER_BY_VIOLATION,
    ValidationErrorType.AGGREGATE_VIOLATION,
    ValidationErrorType.MISSING_COLUMN,
}


def classify_error(message: str | None) -> ValidationErrorType:
    """Map a free-text database error message to a typed error.

    Args:
        message: Error text from the database driver.

    Returns:
        The first matching ``ValidationErrorType``, ``OTHER`` when none match.
    """
    if not message:
        return ValidationErrorType.OTHER
    lowered = message.lower()
    for error_type, patterns in _ERROR_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return error_type
    return ValidationErrorType.OTHER


def build_error_message(error_type: ValidationErrorType, detail: str | None = None) -> str:
    """Build a user-friendly message for a classified error.

    Args:
        error_type: Classified error type.
        detail: Raw error text, appended for unclassified errors only.

    Returns:
        Message suitable for display.
    """
    if error_type in _USER_MESSAGES:
        return _USER_MESSAGES[error_type]
    if detail:
        return f"The query could not be completed: {detail[:200]}"
    return "The query could not be completed."


def is_recoverable(errors: list[SQLValidationError]) -> bool:
    """Whether every violation is one a user could resolve by clarifying.

    Args:
        errors: Validation errors from ``SQLValidator.validate``.

    Returns:
        True if non-empty and all error types are user-recoverable.
    """
    return bool(errors) and all(error.type in _RECOVERABLE_TYPES for error in errors)


def summarize_violations(errors: list[SQLValidationError]) -> str:
    """Join violation messages into a single line for logs and notes."""
    return "; ".join(f"{error.type.value}: {error.message}" for error in errors)
