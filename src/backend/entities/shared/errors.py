"""Exception hierarchy for the insight core.

Classification degradation is never an exception; it surfaces as a
``fallback`` classification. Everything else a caller may need to
handle derives from ``InsightError``.
"""


class InsightError(Exception):
    """Base class for all insight-core errors."""


class QuestionValidationError(InsightError):
    """Bad input shape, e.g. missing question text. Raised before any side effect."""


class GenerationError(InsightError):
    """SQL generation or validation could not produce a usable statement.

    Args:
        message: Human-readable description.
        recoverable: Whether more user input could resolve it.
    """

    def __init__(self, message: str, *, recoverable: bool = False) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class ExecutionError(InsightError):
    """The target database rejected or timed out a statement.

    Args:
        message: Database error text.
        error_type: Classified error type (see ``classify_error``).
    """

    def __init__(self, message: str, error_type: str = "other") -> None:
        super().__init__(message)
        self.error_type = error_type


class InvalidStatusTransitionError(InsightError):
    """A sub-question status change not allowed by the state machine."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class FunnelNotFoundError(InsightError):
    """No funnel with the requested id."""


class SubQuestionNotFoundError(InsightError):
    """No sub-question with the requested id."""


class CompositionError(InsightError):
    """A composed statement would not be self-contained or is too deep."""
