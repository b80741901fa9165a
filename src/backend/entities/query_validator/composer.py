"""
Best-effort textual SQL rewrites and multi-turn composition.

Rewrites operate on the clause positions found by ``parsing.parse_query``
and never raise on SQL they do not understand; they return the input
unchanged instead. Composition wraps a parent turn's SQL as the CTE
``previous_result`` so a follow-up question can build on it.
"""

import logging
import re

from entities.query_validator.parsing import (
    SqlText,
    cte_definitions,
    cte_names,
    is_simple_identifier,
    normalize_identifier,
    parse_query,
    strip_comments,
    strip_identifier_quotes,
    table_references,
)
from entities.shared.errors import CompositionError
from models import CompositionStrategy, ConversationTurn, RewriteResult

logger = logging.getLogger(__name__)

PREVIOUS_RESULT = "previous_result"
DEFAULT_MAX_CTE_DEPTH = 3

_LIMIT_RE = r"\b(?:TOP|LIMIT|OFFSET|FETCH)\b"
_TEMP_TABLE_RE = re.compile(r"(?:^|[\s,(])#{1,2}[A-Za-z_]|\bINTO\b|\bCREATE\s+TABLE\b", re.I)


# ── Rewrites ────────────────────────────────────────────────────────────


def fix_order_by_aliases(sql: str) -> RewriteResult:
    """Replace ``ORDER BY <alias>`` with the alias's defining expression.

    Only aliases of computed expressions (CASE, arithmetic, function calls)
    are rewritten. An alias defined more than once is left alone and
    reported as an issue.
    """
    parsed = parse_query(sql)
    if parsed is None or not parsed.order_by or parsed.order_by_span is None:
        return RewriteResult(sql=sql)

    definitions: dict[str, list] = {}
    for item in parsed.select_items:
        if item.alias_key:
            definitions.setdefault(item.alias_key, []).append(item)

    issues: list[str] = []
    rewritten: list[str] = []
    changed = False
    for order in parsed.order_by:
        expression = order.expression
        key = (
            normalize_identifier(expression)
            if is_simple_identifier(expression) and "." not in expression
            else None
        )
        items = definitions.get(key, []) if key else []
        if not items or not any(item.is_computed for item in items):
            rewritten.append(order.raw)
            continue
        if len(items) > 1:
            issues.append(
                f'Alias "{strip_identifier_quotes(expression)}" is defined more than once; '
                "ORDER BY left unchanged"
            )
            rewritten.append(order.raw)
            continue
        direction = f" {order.direction}" if order.direction else ""
        rewritten.append(f"{items[0].expression}{direction}")
        changed = True

    if not changed:
        return RewriteResult(sql=sql, issues=issues)

    start, end = parsed.order_by_span
    new_sql = f"{sql[:start]} {', '.join(rewritten)}{sql[end:]}"
    logger.info("Rewrote ORDER BY aliases: %s", ", ".join(rewritten)[:200])
    return RewriteResult(sql=new_sql, changed=True, issues=issues)


def enforce_row_limit(sql: str, limit: int) -> str:
    """Inject ``TOP <limit>`` into the main SELECT unless it already limits rows.

    Statements with TOP / LIMIT / OFFSET / FETCH on the main query, and
    set operations (UNION etc.), are returned unchanged.
    """
    parsed = parse_query(sql)
    if parsed is None or parsed.has_set_operation:
        return sql

    text = SqlText(sql)
    if text.find(_LIMIT_RE, start=parsed.main_start) is not None:
        return sql

    insert_at = parsed.main_start + len("SELECT")
    modifier = re.match(r"\s+(?:DISTINCT|ALL)\b", sql[insert_at:], re.IGNORECASE)
    if modifier:
        insert_at += modifier.end()
    return f"{sql[:insert_at]} TOP {limit}{sql[insert_at:]}"


def qualify_tables(sql: str, schema: str, tables: list[str] | None = None) -> str:
    """Prefix bare FROM / JOIN table names with *schema*.

    Args:
        sql: Statement to rewrite.
        schema: Schema to add, e.g. ``rpt``.
        tables: Known table names to qualify. ``None`` qualifies every
            bare name that is not a CTE.

    Returns:
        The rewritten SQL (unchanged when nothing needed qualifying).
    """
    ctes = {name.lower() for name in cte_names(sql)}
    wanted = {t.lower() for t in tables} if tables is not None else None

    pieces: list[str] = []
    last = 0
    for reference in table_references(sql):
        name = strip_identifier_quotes(reference.name)
        lowered = name.lower()
        if "." in name or lowered in ctes or name.startswith(("#", "@")):
            continue
        if wanted is not None and lowered not in wanted:
            continue
        pieces.append(sql[last : reference.start])
        pieces.append(f"{schema}.{reference.name}")
        last = reference.end
    pieces.append(sql[last:])
    return "".join(pieces)


# ── Composition ─────────────────────────────────────────────────────────


def _statement(sql: str) -> str:
    return strip_comments(sql).strip().rstrip(";").strip()


def _reject_temp_tables(sql: str) -> None:
    if _TEMP_TABLE_RE.search(SqlText(sql).masked):
        raise CompositionError("Composed SQL cannot create or read temporary tables")


def _rename_references(sql: str, renames: dict[str, str]) -> str:
    """Rename CTE references outside literals (column parts after a dot are kept)."""
    if not renames:
        return sql
    lookup = {old.lower(): new for old, new in renames.items()}
    pattern = r"\b(" + "|".join(re.escape(old) for old in renames) + r")\b"
    masked = SqlText(sql).masked

    pieces: list[str] = []
    last = 0
    for match in re.finditer(pattern, masked, re.IGNORECASE):
        if match.start() > 0 and masked[match.start() - 1] == ".":
            continue
        pieces.append(sql[last : match.start()])
        pieces.append(lookup[match.group(1).lower()])
        last = match.end()
    pieces.append(sql[last:])
    return "".join(pieces)


def _strip_unbounded_order_by(sql: str) -> str:
    """Drop a main-query ORDER BY that SQL Server rejects inside a CTE."""
    parsed = parse_query(sql)
    if parsed is None or parsed.order_by_start is None or parsed.order_by_span is None:
        return sql
    if SqlText(sql).find(r"\b(?:TOP|OFFSET)\b", start=parsed.main_start) is not None:
        return sql
    return (sql[: parsed.order_by_start].rstrip() + sql[parsed.order_by_span[1] :]).strip()


def compose(
    prior_sql: str | None,
    new_sql: str,
    strategy: CompositionStrategy | str = CompositionStrategy.COMPOSED,
    *,
    max_depth: int = DEFAULT_MAX_CTE_DEPTH,
) -> str:
    """Build one self-contained statement from a parent turn and a follow-up.

    ``fresh`` returns *new_sql* unchanged. ``composed`` wraps *prior_sql*
    as ``previous_result``; CTEs the parent declares are hoisted ahead of
    it and renamed when they collide with the follow-up's own CTEs.

    Raises:
        CompositionError: If there is no parent SQL, either statement uses
            temporary tables, or the CTE chain would exceed *max_depth*.
    """
    if CompositionStrategy(strategy) is CompositionStrategy.FRESH:
        return new_sql

    prior = _statement(prior_sql or "")
    follow_up = _statement(new_sql)
    if not prior:
        raise CompositionError("A composed query requires the parent turn's SQL")
    _reject_temp_tables(prior)
    _reject_temp_tables(follow_up)

    prior_ctes, prior_main_start = cte_definitions(prior)
    new_ctes, new_main_start = cte_definitions(follow_up)

    reserved = {name.lower() for name, _, _ in new_ctes} | {PREVIOUS_RESULT}
    taken = reserved | {name.lower() for name, _, _ in prior_ctes}
    renames: dict[str, str] = {}
    for name, _, _ in prior_ctes:
        if name.lower() not in reserved:
            continue
        suffix = 1
        while f"{name}_{suffix}".lower() in taken:
            suffix += 1
        renames[name] = f"{name}_{suffix}"
        taken.add(renames[name].lower())

    hoisted = [
        (renames.get(name, name), columns, _rename_references(body, renames))
        for name, columns, body in prior_ctes
    ]
    prior_main = _strip_unbounded_order_by(
        _rename_references(prior[prior_main_start:].strip(), renames)
    )
    definitions = hoisted + [(PREVIOUS_RESULT, "", prior_main)] + new_ctes

    if len(definitions) > max_depth:
        raise CompositionError(
            f"Composition would nest {len(definitions)} CTEs (maximum {max_depth})"
        )

    body = ",\n".join(
        f"{name}{columns} AS (\n    {inner.strip()}\n)" for name, columns, inner in definitions
    )
    composed = f"WITH {body}\n{follow_up[new_main_start:].strip()}"

    if ";" in SqlText(composed).masked:
        raise CompositionError("Composed SQL must be a single statement")

    logger.info(
        "Composed follow-up over %d CTE(s)%s",
        len(definitions),
        f" (renamed {', '.join(renames)})" if renames else "",
    )
    return composed


def compose_turn(
    parent: ConversationTurn | None,
    question: str,
    sql: str,
    strategy: CompositionStrategy | str = CompositionStrategy.FRESH,
    *,
    max_depth: int = DEFAULT_MAX_CTE_DEPTH,
) -> ConversationTurn:
    """Create the next turn of a conversation, composing its SQL if asked.

    Raises:
        CompositionError: If a composed turn has no parent.
    """
    strategy = CompositionStrategy(strategy)
    if strategy is CompositionStrategy.COMPOSED and parent is None:
        raise CompositionError("A composed turn requires a parent turn")

    sequence_id = parent.sequence_id + 1 if parent else 0
    if strategy is CompositionStrategy.COMPOSED:
        sql = compose(parent.sql, sql, strategy, max_depth=max_depth)

    return ConversationTurn(
        sequence_id=sequence_id,
        question=question,
        sql=sql,
        strategy=strategy,
        parent_sequence_id=parent.sequence_id if parent else None,
    )


def validate_lineage(turns: list[ConversationTurn]) -> None:
    """Check that a thread's turns form an acyclic chain.

    Raises:
        CompositionError: On duplicate sequence ids, a parent that is not
            older than its child, a missing parent, or a composed turn
            without a parent.
    """
    by_id: dict[int, ConversationTurn] = {}
    for turn in turns:
        if turn.sequence_id in by_id:
            raise CompositionError(f"Duplicate sequence id {turn.sequence_id}")
        by_id[turn.sequence_id] = turn

    for turn in turns:
        parent_id = turn.parent_sequence_id
        if parent_id is None:
            if turn.strategy is CompositionStrategy.COMPOSED:
                raise CompositionError(f"Composed turn {turn.sequence_id} has no parent")
            continue
        if parent_id >= turn.sequence_id:
            raise CompositionError(
                f"Turn {turn.sequence_id} cannot descend from turn {parent_id} (cycle)"
            )
        if parent_id not in by_id:
            raise CompositionError(f"Turn {turn.sequence_id} references unknown parent {parent_id}")
