"""Pure-function placeholder substitution for SQL templates.

This module is intentionally free of external dependencies (Azure SDK,
agent_framework, etc.) so that it can be unit-tested without mocking.
"""

import re
from dataclasses import dataclass, field
from typing import Any

# SQL keywords that are inlined rather than quoted
_SQL_KEYWORDS: frozenset[str] = frozenset({"ASC", "DESC", "NULL"})
_SQL_FUNC_RE: re.Pattern[str] = re.compile(r"^[A-Z_]+\s*\(", re.IGNORECASE)

PLACEHOLDER_RE: re.Pattern[str] = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True, slots=True)
class FilledTemplate:
    """Result of placeholder substitution.

    Attributes:
        sql: SQL with every bound placeholder inlined as a literal.
        unfilled: Placeholder names still present in *sql*.
    """

    sql: str
    unfilled: list[str] = field(default_factory=list)


class SqlExpression(str):
    """SQL fragment that is inlined verbatim instead of quoted.

    Only values the service produces itself (catalog defaults, computed
    date windows) are wrapped; user input never is.
    """


def as_expression(value: Any) -> Any:
    """Wrap *value* as a ``SqlExpression`` when it starts with a function call."""
    if isinstance(value, str) and _SQL_FUNC_RE.search(value):
        return SqlExpression(value)
    return value


def find_placeholders(sql_template: str) -> list[str]:
    """Placeholder names in order of first appearance."""
    seen: list[str] = []
    for name in PLACEHOLDER_RE.findall(sql_template):
        if name not in seen:
            seen.append(name)
    return seen


def format_literal(value: Any) -> str:
    """Render a Python value as a SQL literal.

    SQL keywords (ASC / DESC / NULL) and ``SqlExpression`` values (e.g.
    ``DATEADD(...)`` from a catalog default) are inlined directly. Any
    other string is single-quoted with embedded quotes doubled.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if text.upper() in _SQL_KEYWORDS:
        return text.upper()
    if isinstance(value, SqlExpression):
        return text
    escaped = text.replace("'", "''")
    return f"'{escaped}'"


def substitute_placeholders(sql_template: str, values: dict[str, Any]) -> FilledTemplate:
    """Replace ``{{name}}`` tokens with literal values.

    A template that already wraps a token in quotes (``'{{name}}'``) gets
    the escaped text without a second pair of quotes.

    Args:
        sql_template: The SQL template with ``{{param}}`` tokens.
        values: Dictionary of placeholder name -> value.

    Returns:
        A ``FilledTemplate`` with the substituted SQL and any tokens
        left unfilled.
    """
    sql = sql_template
    for name, value in values.items():
        quoted = re.compile(r"'\{\{\s*" + re.escape(name) + r"\s*\}\}'")
        bare = re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")
        if isinstance(value, str) and quoted.search(sql):
            escaped = value.replace("'", "''")
            sql = quoted.sub(lambda _m, v=escaped: f"'{v}'", sql)
        literal = format_literal(value)
        sql = bare.sub(lambda _m, v=literal: v, sql)

    return FilledTemplate(sql=sql, unfilled=find_placeholders(sql))
