"""
Direct SQL edits requested during refinement.

Each edit is a targeted textual rewrite of the main SELECT that leaves
everything else verbatim. All edits are idempotent: applying the same
edit to its own output returns that output unchanged. Edits that cannot
be applied safely (set operations, unknown units, missing details) log a
warning and return the SQL as given.
"""

import logging
import re
from typing import Any

from entities.query_validator import enforce_row_limit
from entities.query_validator.parsing import (
    CLAUSE_PATTERNS,
    SqlText,
    is_aggregate_call,
    normalize_expression,
    normalize_identifier,
    parse_query,
)
from models import SqlModification

logger = logging.getLogger(__name__)

_TOP_RE = r"\bTOP\s*(?:\(\s*\d+\s*\)|\d+)"
_FETCH_RE = r"\bFETCH\s+(?:NEXT|FIRST)\s+\d+\s+ROWS?\s+ONLY\b"
_DATEADD_RE = re.compile(
    r"DATEADD\(\s*[A-Za-z]+\s*,\s*-?\s*\d+\s*,\s*GETDATE\(\s*\)\s*\)", re.IGNORECASE
)
_TIME_UNITS = frozenset({"day", "week", "month", "quarter", "year"})

# Clauses that may follow WHERE / GROUP BY in the main query
_AFTER_WHERE = ("group_by", "having", "order_by", "offset", "option", "set_operation")
_AFTER_GROUP_BY = ("having", "order_by", "offset", "option", "set_operation")


def _squash(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


def _clause_end(text: SqlText, after: int, clauses: tuple[str, ...]) -> int:
    """Start of the first of *clauses* after *after*, else end of statement (before ``;``)."""
    positions = [
        match.start()
        for match in (text.find(CLAUSE_PATTERNS[name], start=after) for name in clauses)
        if match is not None
    ]
    if positions:
        return min(positions)
    trailing = re.search(r"[\s;]*$", text.sql)
    return trailing.start() if trailing else len(text.sql)


def _insert_before(sql: str, position: int, fragment: str) -> str:
    """Insert *fragment* before *position*, keeping the whitespace that preceded it."""
    head = sql[:position]
    stripped = head.rstrip()
    gap = head[len(stripped) :]
    return f"{stripped} {fragment}{gap}{sql[position:]}"


# ── Edits ───────────────────────────────────────────────────────────────


def add_columns(sql: str, columns: list[str]) -> str:
    """Append *columns* to the main SELECT list, skipping ones already selected.

    In a grouped query non-aggregate columns are appended to GROUP BY too.
    """
    parsed = parse_query(sql)
    if parsed is None or parsed.select_span is None:
        return sql
    if any(item.is_star for item in parsed.select_items):
        return sql

    present = {normalize_expression(item.expression) for item in parsed.select_items}
    present |= {item.alias_key for item in parsed.select_items if item.alias_key}
    new_columns: list[str] = []
    for column in columns:
        column = column.strip()
        key = normalize_expression(column)
        if column and key not in present and normalize_identifier(column) not in present:
            new_columns.append(column)
            present.add(key)
    if not new_columns:
        return sql

    text = SqlText(sql)
    result = sql
    if parsed.group_by:
        grouped = {normalize_expression(expression) for expression in parsed.group_by}
        to_group = [
            c
            for c in new_columns
            if not is_aggregate_call(c) and normalize_expression(c) not in grouped
        ]
        group_match = text.find(CLAUSE_PATTERNS["group_by"], start=parsed.main_start)
        if to_group and group_match is not None:
            group_end = _clause_end(text, group_match.end(), _AFTER_GROUP_BY)
            group_end = len(sql[:group_end].rstrip())
            result = f"{result[:group_end]}, {', '.join(to_group)}{result[group_end:]}"

    select_end = len(sql[: parsed.select_span[1]].rstrip())
    return f"{result[:select_end]}, {', '.join(new_columns)}{result[select_end:]}"


def change_limit(sql: str, limit: int) -> str:
    """Set the main query's row limit: rewrite TOP / FETCH, or inject TOP."""
    if limit < 1:
        raise ValueError(f"Row limit must be positive, got {limit}")
    parsed = parse_query(sql)
    if parsed is None or parsed.select_span is None:
        return sql

    text = SqlText(sql)
    top = text.find(_TOP_RE, start=parsed.main_start, end=parsed.select_span[0])
    if top is not None:
        return f"{sql[: top.start()]}TOP {limit}{sql[top.end():]}"

    fetch = text.find(_FETCH_RE, start=parsed.main_start)
    if fetch is not None:
        replaced = re.sub(r"\d+", str(limit), fetch.group(0), count=1)
        return f"{sql[: fetch.start()]}{replaced}{sql[fetch.end():]}"

    if parsed.has_set_operation:
        logger.warning("Cannot change the row limit of a set operation")
        return sql
    return enforce_row_limit(sql, limit)


def add_filter(sql: str, condition: str) -> str:
    """AND *condition* into the main WHERE clause, or add a WHERE clause.

    Without a WHERE the clause is inserted before GROUP BY / HAVING /
    ORDER BY / OFFSET, or appended at the end. An existing WHERE with a
    top-level OR is parenthesized first.
    """
    condition = re.sub(r"^\s*(?:WHERE|AND)\s+", "", condition.strip(), flags=re.IGNORECASE)
    condition = condition.rstrip(";").strip()
    parsed = parse_query(sql)
    if not condition or parsed is None:
        return sql
    if parsed.has_set_operation:
        logger.warning("Cannot add a filter to a set operation")
        return sql

    text = SqlText(sql)
    where = text.find(CLAUSE_PATTERNS["where"], start=parsed.main_start)
    if where is None:
        return _insert_before(
            sql, _clause_end(text, parsed.main_start, _AFTER_WHERE), f"WHERE {condition}"
        )

    end = _clause_end(text, where.end(), _AFTER_WHERE)
    body = sql[where.end() : end]
    if _squash(condition) in _squash(body):
        return sql

    core = body.strip()
    leading = body[: len(body) - len(body.lstrip())] or " "
    trailing = body[len(body.rstrip()) :]
    if SqlText(core).find(r"\bOR\b") is not None:
        core = f"({core})"
    return f"{sql[: where.end()]}{leading}{condition} AND {core}{trailing}{sql[end:]}"


def change_timerange(sql: str, unit: str, value: int) -> str:
    """Rewrite the first ``DATEADD(<unit>, -n, GETDATE())`` window."""
    unit = unit.strip().lower().rstrip("s")
    if unit not in _TIME_UNITS:
        logger.warning("Unsupported time unit '%s'", unit)
        return sql
    replacement = f"DATEADD({unit.upper()}, -{abs(int(value))}, GETDATE())"
    return _DATEADD_RE.sub(replacement, sql, count=1)


# ── Dispatch ────────────────────────────────────────────────────────────


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def apply_modification(sql: str, modification: SqlModification) -> str:
    """Apply one requested edit. Incomplete details leave the SQL unchanged."""
    details = modification.details
    if modification.type == "add_column":
        columns = details.get("columns") or details.get("column") or []
        if isinstance(columns, str):
            columns = [columns]
        return add_columns(sql, [str(c) for c in columns])

    if modification.type == "change_limit":
        limit = _as_int(details.get("limit"))
        if limit is not None and limit > 0:
            return change_limit(sql, limit)

    elif modification.type == "change_filter":
        condition = details.get("condition")
        if isinstance(condition, str):
            return add_filter(sql, condition)

    elif modification.type == "change_timerange":
        value = _as_int(details.get("value"))
        unit = details.get("unit")
        if isinstance(unit, str) and value is not None:
            return change_timerange(sql, unit, value)

    logger.warning("Ignoring %s edit with incomplete details: %s", modification.type, details)
    return sql
