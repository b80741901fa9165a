"""Pure query validation logic.

Checks generated SQL before it reaches the database: read-only single
statement, balanced syntax, GROUP BY / ORDER BY consistency, nested
aggregates and schema qualification. No I/O, no framework dependencies,
suitable for direct unit testing.
"""

from __future__ import annotations

import logging
import re
import time

from config.settings import Settings
from entities.query_validator.parsing import (
    AGGREGATE_CALL_RE,
    ParsedQuery,
    SqlText,
    column_only,
    cte_names,
    extract_identifiers,
    is_aggregate_call,
    is_simple_identifier,
    is_windowed,
    normalize_expression,
    normalize_identifier,
    parse_query,
    strip_comments,
    strip_identifier_quotes,
    table_references,
)
from models import (
    SQLValidationError,
    ValidationErrorType,
    ValidationMetadata,
    ValidationResult,
)

logger = logging.getLogger(__name__)

# Patterns that never belong in generated analytics SQL
SQL_INJECTION_PATTERNS = [
    r"INTO\s+OUTFILE",  # File write attempt
    r"INTO\s+DUMPFILE",  # File write attempt
    r"xp_cmdshell",  # SQL Server command execution
    r"sp_executesql",  # Dynamic SQL execution
    r"OPENROWSET",  # Ad hoc remote access
    r"OPENQUERY",  # Linked server access
    r"@@version",  # Information disclosure
    r"WAITFOR\s+DELAY",  # Time-based injection
]

# Dangerous keywords that should not appear in SELECT queries
DANGEROUS_KEYWORDS = [
    "INSERT",
    "UPDATE",
    "DELETE",
    "MERGE",
    "DROP",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "EXEC",
    "EXECUTE",
    "INTO",
    "GRANT",
    "REVOKE",
    "DENY",
    "BACKUP",
    "RESTORE",
    "SHUTDOWN",
    "DBCC",
]


def _syntax_error(message: str, expression: str | None = None) -> SQLValidationError:
    return SQLValidationError(
        type=ValidationErrorType.SYNTAX_ERROR, message=message, expression=expression
    )


def _check_syntax(sql: str) -> list[SQLValidationError]:
    """Balanced parentheses and quotes. Literal contents are ignored."""
    errors: list[SQLValidationError] = []
    masked = SqlText(sql).masked

    if masked.count("(") != masked.count(")"):
        errors.append(_syntax_error("Unbalanced parentheses"))

    if masked.count("'") % 2 != 0:
        errors.append(_syntax_error("Unbalanced single quotes"))

    return errors


def _check_statement_type(sql: str) -> list[SQLValidationError]:
    """A single read-only SELECT (optionally preceded by CTEs)."""
    errors: list[SQLValidationError] = []
    first_word = re.match(r"\s*(\w+)", sql)
    statement_type = first_word.group(1).upper() if first_word else "UNKNOWN"

    if statement_type not in ("SELECT", "WITH"):
        errors.append(_syntax_error(f"Statement type is {statement_type}, must be SELECT"))
    elif statement_type == "WITH" and SqlText(sql).find(r"\bSELECT\b") is None:
        errors.append(_syntax_error("WITH clause is not followed by a SELECT statement"))

    trimmed = sql.strip().rstrip(";").strip()
    if ";" in SqlText(trimmed).masked:
        errors.append(
            _syntax_error("Multiple statements detected (semicolon found within query)")
        )

    return errors


def _check_security(sql: str) -> list[SQLValidationError]:
    """Dangerous keywords and injection patterns outside string literals."""
    errors: list[SQLValidationError] = []
    masked = SqlText(sql).masked

    for keyword in DANGEROUS_KEYWORDS:
        if re.search(r"\b" + keyword + r"\b", masked, re.IGNORECASE):
            errors.append(_syntax_error(f"Dangerous keyword detected: {keyword}", keyword))

    for pattern in SQL_INJECTION_PATTERNS:
        if re.search(pattern, masked, re.IGNORECASE):
            errors.append(_syntax_error("Potential SQL injection pattern detected"))
            break

    return errors


def _check_nested_aggregates(sql: str) -> list[SQLValidationError]:
    """Aggregate calls nested inside other aggregates (window aggregates excepted)."""
    text = SqlText(sql)
    calls: list[tuple[str, int, int]] = []
    for match in AGGREGATE_CALL_RE.finditer(text.masked):
        open_index = match.end() - 1
        close_index = text.closing_paren(open_index)
        if close_index == -1:
            continue
        calls.append((match.group(1).upper(), match.start(), close_index))

    errors: list[SQLValidationError] = []
    reported: set[int] = set()
    for outer_name, outer_start, outer_end in calls:
        if re.match(r"\s*OVER\s*\(", text.masked[outer_end + 1 :], re.IGNORECASE):
            continue
        for inner_name, inner_start, _ in calls:
            if outer_start < inner_start < outer_end and inner_start not in reported:
                reported.add(inner_start)
                errors.append(
                    SQLValidationError(
                        type=ValidationErrorType.AGGREGATE_VIOLATION,
                        message=(
                            f"Nested aggregate detected: {outer_name}(... {inner_name}(...))"
                        ),
                        suggestion=(
                            "Compute the inner aggregate in a CTE or subquery and "
                            "aggregate its result in the outer query."
                        ),
                        expression=sql[outer_start : outer_end + 1],
                    )
                )
    return errors


class _GroupSet:
    """Expressions listed in GROUP BY, with lookups for coverage checks."""

    def __init__(self, expressions: list[str]) -> None:
        self.expressions = {normalize_expression(e) for e in expressions}
        simple = [e for e in expressions if is_simple_identifier(e)]
        self.identifiers = {normalize_identifier(e) for e in simple}
        self.columns = {column_only(e) for e in simple}

    def covers_identifier(self, identifier: str) -> bool:
        return (
            normalize_identifier(identifier) in self.identifiers
            or column_only(identifier) in self.columns
        )

    def missing(self, expression: str) -> list[str]:
        """Identifiers in *expression* not covered by the group set."""
        if normalize_expression(expression) in self.expressions:
            return []
        return [i for i in extract_identifiers(expression) if not self.covers_identifier(i)]


def _order_suggestion(expression: str) -> str:
    return (
        f'Either add "{expression}" to the GROUP BY clause or wrap it with an aggregate '
        f'such as MIN("{expression}") based on how you want the rows sorted.'
    )


def _check_grouping(parsed: ParsedQuery, groups: _GroupSet) -> list[SQLValidationError]:
    """Non-aggregated select items of an aggregated query must be grouped."""
    errors: list[SQLValidationError] = []
    for item in parsed.select_items:
        if item.is_star:
            errors.append(
                SQLValidationError(
                    type=ValidationErrorType.GROUP_BY_VIOLATION,
                    message="SELECT * cannot be combined with GROUP BY or aggregates",
                    suggestion="List the grouped columns explicitly.",
                    expression=item.expression,
                )
            )
            continue
        if item.is_aggregate or item.is_windowed or item.has_subquery:
            continue
        missing = groups.missing(item.expression)
        if missing:
            column = missing[0]
            errors.append(
                SQLValidationError(
                    type=ValidationErrorType.GROUP_BY_VIOLATION,
                    message=(
                        f'Column "{column}" is invalid in the select list because it is not '
                        "contained in an aggregate function or the GROUP BY clause"
                    ),
                    suggestion=(
                        f'Add "{column}" to the GROUP BY clause or wrap it with an aggregate '
                        f"such as MIN({column})."
                    ),
                    expression=item.expression,
                )
            )
    return errors


def _check_order_by(
    parsed: ParsedQuery, groups: _GroupSet, aggregated: bool
) -> list[SQLValidationError]:
    """ORDER BY items must be sortable against the (possibly grouped) result."""
    errors: list[SQLValidationError] = []
    aliases = {item.alias_key: item for item in parsed.select_items if item.alias_key}

    for order in parsed.order_by:
        if order.is_position:
            continue
        expression = order.expression
        key = (
            normalize_identifier(expression)
            if is_simple_identifier(expression) and "." not in expression
            else None
        )

        if key and key in aliases:
            item = aliases[key]
            if item.is_computed:
                direction = f" {order.direction}" if order.direction else ""
                errors.append(
                    SQLValidationError(
                        type=ValidationErrorType.ORDER_BY_VIOLATION,
                        message=(
                            f'ORDER BY "{strip_identifier_quotes(expression)}" refers to the '
                            "alias of a computed expression"
                        ),
                        suggestion=f"ORDER BY {item.expression}{direction}",
                        expression=order.raw,
                    )
                )
            elif aggregated and not (item.is_aggregate or not groups.missing(item.expression)):
                errors.append(
                    SQLValidationError(
                        type=ValidationErrorType.ORDER_BY_VIOLATION,
                        message=(
                            f'ORDER BY alias "{item.alias}" refers to "{item.expression}", '
                            "which is neither aggregated nor grouped"
                        ),
                        suggestion=_order_suggestion(item.expression),
                        expression=order.raw,
                    )
                )
            continue

        if not aggregated or is_aggregate_call(expression) or is_windowed(expression):
            continue

        missing = groups.missing(expression)
        if missing:
            subject = missing[0] if is_simple_identifier(expression) else expression
            errors.append(
                SQLValidationError(
                    type=ValidationErrorType.GROUP_BY_VIOLATION,
                    message=(
                        f'ORDER BY expression "{expression}" references '
                        f"{', '.join(missing)}, which is not in the GROUP BY clause"
                    ),
                    suggestion=_order_suggestion(subject),
                    expression=order.raw,
                )
            )
    return errors


def _check_schema(sql: str, schema: str) -> list[SQLValidationError]:
    """Every FROM / JOIN target must live in *schema* (CTE names exempt)."""
    errors: list[SQLValidationError] = []
    ctes = {name.lower() for name in cte_names(sql)}
    prefix = schema.lower() + "."
    seen: set[str] = set()

    for reference in table_references(sql):
        name = strip_identifier_quotes(reference.name)
        lowered = name.lower()
        if lowered in ctes or lowered in seen:
            continue
        seen.add(lowered)
        if not lowered.startswith(prefix):
            errors.append(
                SQLValidationError(
                    type=ValidationErrorType.SCHEMA_VIOLATION,
                    message=f'Table "{name}" is not in the "{schema}" schema',
                    suggestion=f"{schema}.{name.split('.')[-1]}",
                    expression=name,
                )
            )
    return errors


class SQLValidator:
    """Structural validator for generated SQL Server queries.

    Validation is pure and deterministic: the same SQL always yields the
    same errors, and the validator never raises on malformed input.

    Args:
        required_schema: Schema every table reference must use. ``None``
            disables the check.
    """

    def __init__(self, required_schema: str | None = "rpt") -> None:
        self.required_schema = required_schema

    @classmethod
    def from_settings(cls, settings: Settings) -> "SQLValidator":
        return cls(required_schema=settings.required_schema or None)

    def validate(self, sql: str) -> ValidationResult:
        """Validate a single SQL statement.

        Args:
            sql: The SQL to check.

        Returns:
            ``ValidationResult`` with typed errors, warnings and the parsed
            clause metadata.
        """
        started = time.perf_counter()
        logger.info("Validating query: %s", sql[:200] if sql else "(empty)")
        try:
            result = self._validate(sql or "")
        except Exception as exc:
            logger.exception("Validation error")
            result = ValidationResult(
                is_valid=False,
                errors=[
                    SQLValidationError(
                        type=ValidationErrorType.OTHER, message=f"Validation error: {exc!s}"
                    )
                ],
            )

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Validation complete: valid=%s, errors=%d, warnings=%d",
            result.is_valid,
            len(result.errors),
            len(result.warnings),
        )
        return result.model_copy(update={"duration_ms": duration_ms})

    def _validate(self, sql: str) -> ValidationResult:
        cleaned = strip_comments(sql).strip()
        if not cleaned:
            return ValidationResult(is_valid=False, errors=[_syntax_error("Query is empty")])

        errors = _check_syntax(cleaned) + _check_statement_type(cleaned)
        errors += _check_security(cleaned)
        if errors:
            return ValidationResult(is_valid=False, errors=errors)

        statement = cleaned.rstrip(";").strip()
        warnings: list[str] = []
        errors.extend(_check_nested_aggregates(statement))

        metadata = ValidationMetadata()
        parsed = parse_query(statement)
        if parsed is not None:
            groups = _GroupSet(parsed.group_by)
            aggregated = bool(parsed.group_by) or any(
                item.is_aggregate for item in parsed.select_items
            )
            metadata = ValidationMetadata(
                group_by_expressions=parsed.group_by,
                order_by_expressions=[order.raw for order in parsed.order_by],
                select_aliases={
                    item.alias_key: item.expression
                    for item in parsed.select_items
                    if item.alias_key
                },
                has_aggregates=any(item.is_aggregate for item in parsed.select_items),
            )
            if parsed.has_set_operation:
                warnings.append(
                    "Set operation detected; GROUP BY and ORDER BY checks were skipped"
                )
            else:
                if aggregated:
                    errors.extend(_check_grouping(parsed, groups))
                errors.extend(_check_order_by(parsed, groups, aggregated))

        if self.required_schema:
            errors.extend(_check_schema(statement, self.required_schema))

        return ValidationResult(
            is_valid=not errors, errors=errors, warnings=warnings, metadata=metadata
        )
