"""Unit tests for error classification and user-facing error messages.

Covers classify_error, build_error_message, is_recoverable and
summarize_violations for:
- Database error text mapped to typed errors
- First-family-wins ordering
- Friendly messages for classified errors, raw detail otherwise
- Recoverability of structural violations
"""

import pytest
from entities.shared.error_recovery import (
    build_error_message,
    classify_error,
    is_recoverable,
    summarize_violations,
)
from models import SQLValidationError, ValidationErrorType

# ── classify_error ──────────────────────────────────────────────────────


class TestClassifyError:
    """Free-text database errors become typed errors."""

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Query timeout expired after 30s", ValidationErrorType.TIMEOUT),
            ("The SELECT permission was denied on object 'Patient'", ValidationErrorType.PERMISSION_DENIED),
            ("Login failed for user '<token-identified principal>'", ValidationErrorType.PERMISSION_DENIED),
            ("Invalid column name 'healed'.", ValidationErrorType.MISSING_COLUMN),
            ("The multi-part identifier \"w.id\" could not be bound.", ValidationErrorType.JOIN_FAILURE),
            ("Invalid object name 'rpt.Wounds'.", ValidationErrorType.JOIN_FAILURE),
            ("Incorrect syntax near the keyword 'FROM'.", ValidationErrorType.SYNTAX_ERROR),
            ("Connection reset by peer", ValidationErrorType.OTHER),
        ],
    )
    def test_classification(self, message: str, expected: ValidationErrorType) -> None:
        assert classify_error(message) == expected

    def test_empty_message_is_other(self) -> None:
        assert classify_error("") == ValidationErrorType.OTHER
        assert classify_error(None) == ValidationErrorType.OTHER

    def test_case_insensitive(self) -> None:
        assert classify_error("QUERY TIMED OUT") == ValidationErrorType.TIMEOUT

    def test_timeout_checked_first(self) -> None:
        """A cancelled query mentioning syntax still reports the timeout."""
        message = "Query cancelled: timeout while checking syntax"
        assert classify_error(message) == ValidationErrorType.TIMEOUT


# ── build_error_message ─────────────────────────────────────────────────


class TestBuildErrorMessage:
    """User-friendly messages."""

    def test_classified_error_hides_detail(self) -> None:
        message = build_error_message(ValidationErrorType.MISSING_COLUMN, "Invalid column name 'x'")

        assert "'x'" not in message
        assert "field that doesn't exist" in message

    def test_unclassified_error_includes_detail(self) -> None:
        message = build_error_message(ValidationErrorType.OTHER, "Connection reset by peer")

        assert message == "The query could not be completed: Connection reset by peer"

    def test_detail_is_truncated(self) -> None:
        message = build_error_message(ValidationErrorType.OTHER, "x" * 500)

        assert message.endswith("x" * 200)
        assert len(message) < 250

    def test_no_detail(self) -> None:
        assert build_error_message(ValidationErrorType.OTHER) == "The query could not be completed."


# ── is_recoverable / summarize_violations ───────────────────────────────


def _violation(error_type: ValidationErrorType, message: str = "bad") -> SQLValidationError:
    return SQLValidationError(type=error_type, message=message)


class TestRecoverability:
    """Only structural violations a user can fix are recoverable."""

    def test_structural_violations_are_recoverable(self) -> None:
        errors = [
            _violation(ValidationErrorType.GROUP_BY_VIOLATION),
            _violation(ValidationErrorType.ORDER_BY_VIOLATION),
        ]
        assert is_recoverable(errors) is True

    def test_schema_violation_is_not(self) -> None:
        errors = [
            _violation(ValidationErrorType.GROUP_BY_VIOLATION),
            _violation(ValidationErrorType.SCHEMA_VIOLATION),
        ]
        assert is_recoverable(errors) is False

    def test_no_errors_is_not_recoverable(self) -> None:
        assert is_recoverable([]) is False

    def test_summary_joins_types_and_messages(self) -> None:
        errors = [
            _violation(ValidationErrorType.GROUP_BY_VIOLATION, "status not grouped"),
            _violation(ValidationErrorType.SCHEMA_VIOLATION, "dbo.Patient"),
        ]
        assert summarize_violations(errors) == (
            "GROUP_BY_VIOLATION: status not grouped; SCHEMA_VIOLATION: dbo.Patient"
        )
