"""Heuristic SQL scanning helpers.

A full SQL parser is not needed for the structural checks we run, but
naive regexes are fooled by string literals, bracketed identifiers and
subqueries. ``SqlText`` masks literal contents (keeping offsets intact)
and tracks parenthesis depth so clause keywords can be located at the
top level of a statement. Tuned for SQL Server syntax (TOP, brackets,
CTEs).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_FILL = "_"

AGGREGATE_FUNCTIONS = (
    "COUNT_BIG",
    "COUNT",
    "SUM",
    "AVG",
    "MIN",
    "MAX",
    "STRING_AGG",
    "PERCENTILE_CONT",
    "PERCENTILE_DISC",
    "VARP",
    "VAR",
    "STDEVP",
    "STDEV",
    "STDDEV",
)

AGGREGATE_CALL_RE = re.compile(r"\b(" + "|".join(AGGREGATE_FUNCTIONS) + r")\s*\(", re.IGNORECASE)
WINDOW_RE = re.compile(r"\bOVER\s*\(", re.IGNORECASE)
SUBQUERY_RE = re.compile(r"\(\s*SELECT\b", re.IGNORECASE)
STRING_LITERAL_RE = re.compile(r"N?'(?:[^']|'')*'")
IDENTIFIER_RE = re.compile(r"[A-Za-z_][\w]*(?:\s*\.\s*[A-Za-z_][\w]*)*")
SIMPLE_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)?$")
_STAR_RE = re.compile(r"^(?:[\w\[\]\"]+\.)*\*$")

CLAUSE_PATTERNS = {
    "select": r"\bSELECT\b",
    "from": r"\bFROM\b",
    "where": r"\bWHERE\b",
    "group_by": r"\bGROUP\s+BY\b",
    "having": r"\bHAVING\b",
    "order_by": r"\bORDER\s+BY\b",
    "offset": r"\bOFFSET\b",
    "option": r"\bOPTION\s*\(",
    "set_operation": r"\b(?:UNION|INTERSECT|EXCEPT)\b",
}

_OPERATOR_WORDS = frozenset({"like", "is", "not", "in", "between", "and", "or", "escape"})

_SELECT_PREFIX_RE = re.compile(
    r"^\s*(?:(?:DISTINCT|ALL)\s+)?"
    r"(?:TOP\s*(?:\(\s*\d+\s*\)|\d+)\s*(?:PERCENT\s+)?(?:WITH\s+TIES\s+)?)?",
    re.IGNORECASE,
)

KEYWORDS = frozenset(
    {
        "select", "from", "where", "group", "by", "having", "order", "with", "case",
        "when", "then", "else", "end", "join", "inner", "left", "right", "full",
        "outer", "cross", "apply", "on", "and", "or", "not", "asc", "desc", "nulls",
        "first", "last", "distinct", "top", "limit", "offset", "fetch", "next",
        "rows", "row", "only", "partition", "over", "into", "union", "all", "as",
        "cast", "convert", "try_cast", "like", "in", "exists", "between", "is",
        "null", "coalesce", "isnull", "datediff", "dateadd", "datepart", "datename",
        "getdate", "year", "quarter", "month", "week", "day", "hour", "minute",
        "second", "int", "bigint", "smallint", "bit", "decimal", "numeric", "float",
        "real", "money", "date", "datetime", "datetime2", "time", "char", "varchar",
        "nchar", "nvarchar", "text", "true", "false", "percent", "ties", "within",
    }
    | {fn.lower() for fn in AGGREGATE_FUNCTIONS}
)


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments outside literals and brackets."""
    out: list[str] = []
    quote: str | None = None
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""
        if quote:
            out.append(ch)
            if ch == quote:
                if quote != "]" and nxt == quote:
                    out.append(nxt)
                    i += 2
                    continue
                quote = None
            i += 1
            continue
        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            if end == -1:
                break
            i = end
            continue
        if ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            if end == -1:
                break
            out.append(" ")
            i = end + 2
            continue
        if ch in "'\"":
            quote = ch
        elif ch == "[":
            quote = "]"
        out.append(ch)
        i += 1
    return "".join(out)


def mask_literals(sql: str) -> str:
    """Replace quoted strings, bracketed names and comments with filler.

    The result has the same length as *sql*, so offsets found in the
    masked text index the original text.
    """
    chars = list(sql)
    quote: str | None = None
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""
        if quote:
            if ch == quote:
                if quote != "]" and nxt == quote:
                    chars[i] = chars[i + 1] = _FILL
                    i += 2
                    continue
                quote = None
            else:
                chars[i] = _FILL
            i += 1
            continue
        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            end = n if end == -1 else end
            chars[i:end] = " " * (end - i)
            i = end
            continue
        if ch == "/" and nxt == "*":
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            chars[i:end] = " " * (end - i)
            i = end
            continue
        if ch in "'\"":
            quote = ch
        elif ch == "[":
            quote = "]"
        i += 1
    return "".join(chars)


def paren_depths(masked: str) -> list[int]:
    """Parenthesis depth at each offset. Both parens of a pair sit at the outer depth."""
    depths: list[int] = []
    depth = 0
    for ch in masked:
        if ch == ")":
            depth = max(depth - 1, 0)
        depths.append(depth)
        if ch == "(":
            depth += 1
    return depths


class SqlText:
    """SQL text with literal masking and depth tracking for top-level searches."""

    def __init__(self, sql: str) -> None:
        self.sql = sql
        self.masked = mask_literals(sql)
        self.depths = paren_depths(self.masked)

    def find(
        self, pattern: str, start: int = 0, end: int | None = None, depth: int = 0
    ) -> re.Match[str] | None:
        """First case-insensitive match of *pattern* at *depth* within [start, end)."""
        end = len(self.sql) if end is None else end
        for match in re.finditer(pattern, self.masked, re.IGNORECASE):
            if match.start() < start:
                continue
            if match.start() >= end:
                return None
            if self.depths[match.start()] == depth:
                return match
        return None

    def find_all(self, pattern: str, depth: int | None = 0) -> list[re.Match[str]]:
        """Every match at *depth* (any depth when ``None``)."""
        return [
            match
            for match in re.finditer(pattern, self.masked, re.IGNORECASE)
            if depth is None or self.depths[match.start()] == depth
        ]

    def closing_paren(self, open_index: int) -> int:
        """Offset of the paren closing the one at *open_index* (-1 if unbalanced)."""
        depth = 0
        for i in range(open_index, len(self.masked)):
            ch = self.masked[i]
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return i
        return -1

    def split(self, start: int = 0, end: int | None = None, sep: str = ",") -> list[str]:
        """Split [start, end) on top-level *sep*, relative to the span's own depth."""
        end = len(self.sql) if end is None else end
        if start >= end:
            return []
        base = self.depths[start]
        parts: list[str] = []
        last = start
        for i in range(start, end):
            if self.masked[i] == sep and self.depths[i] == base:
                parts.append(self.sql[last:i])
                last = i + 1
        parts.append(self.sql[last:end])
        return [part.strip() for part in parts if part.strip()]


# ── Expression helpers ──────────────────────────────────────────────────


def strip_identifier_quotes(value: str) -> str:
    return re.sub(r"[\[\]`\"]", "", value)


def normalize_expression(expression: str) -> str:
    """Lowercase, unquote, collapse whitespace and drop wrapping parens."""
    normalized = re.sub(r"\s+", " ", strip_identifier_quotes(expression)).strip()
    while normalized.startswith("(") and SqlText(normalized).closing_paren(0) == len(normalized) - 1:
        normalized = normalized[1:-1].strip()
    normalized = re.sub(r"\s*([(),.])\s*", r"\1", normalized)
    return normalized.lower()


def normalize_identifier(identifier: str) -> str:
    return re.sub(r"\s+", "", strip_identifier_quotes(identifier)).lower()


def column_only(identifier: str) -> str:
    return normalize_identifier(identifier).split(".")[-1]


def is_simple_identifier(expression: str) -> bool:
    return bool(SIMPLE_IDENTIFIER_RE.match(strip_identifier_quotes(expression).strip()))


def is_aggregate_call(expression: str) -> bool:
    """Contains a non-windowed aggregate function call."""
    stripped = STRING_LITERAL_RE.sub("''", expression)
    return bool(AGGREGATE_CALL_RE.search(stripped)) and not WINDOW_RE.search(stripped)


def is_windowed(expression: str) -> bool:
    return bool(WINDOW_RE.search(STRING_LITERAL_RE.sub("''", expression)))


def extract_identifiers(expression: str) -> list[str]:
    """Column references in an expression, excluding keywords and function names."""
    text = strip_identifier_quotes(STRING_LITERAL_RE.sub(" ", expression))
    identifiers: list[str] = []
    for match in IDENTIFIER_RE.finditer(text):
        token = re.sub(r"\s+", "", match.group(0))
        if token.lower() in KEYWORDS:
            continue
        if match.start() > 0 and (
            text[match.start() - 1] in "@#." or text[match.start() - 1].isdigit()
        ):
            continue
        rest = text[match.end() :].lstrip()
        if rest.startswith("("):
            continue
        if token not in identifiers:
            identifiers.append(token)
    return identifiers


# ── Query structure ─────────────────────────────────────────────────────


@dataclass
class SelectItem:
    raw: str
    expression: str
    alias: str | None = None

    @property
    def alias_key(self) -> str | None:
        return normalize_identifier(self.alias) if self.alias else None

    @property
    def is_aggregate(self) -> bool:
        return is_aggregate_call(self.expression)

    @property
    def is_windowed(self) -> bool:
        return is_windowed(self.expression)

    @property
    def is_simple(self) -> bool:
        return is_simple_identifier(self.expression)

    @property
    def has_subquery(self) -> bool:
        return bool(SUBQUERY_RE.search(self.expression))

    @property
    def is_star(self) -> bool:
        return bool(_STAR_RE.match(self.expression.strip()))

    @property
    def is_computed(self) -> bool:
        """Alias of an expression rather than a column, aggregate or constant."""
        if self.is_simple or self.is_aggregate or self.is_star:
            return False
        return bool(extract_identifiers(self.expression)) or "(" in self.expression


@dataclass
class OrderItem:
    raw: str
    expression: str
    direction: str | None = None

    @property
    def is_position(self) -> bool:
        return self.expression.strip().isdigit()


@dataclass
class ParsedQuery:
    """Clause contents of the main (outermost) SELECT of a statement."""

    main_start: int
    select_items: list[SelectItem] = field(default_factory=list)
    group_by: list[str] = field(default_factory=list)
    order_by: list[OrderItem] = field(default_factory=list)
    order_by_start: int | None = None
    order_by_span: tuple[int, int] | None = None
    select_span: tuple[int, int] | None = None
    has_set_operation: bool = False
    has_offset: bool = False


def split_alias(item: str) -> tuple[str, str | None]:
    """Split a select item into (expression, alias)."""
    text = SqlText(item)
    as_matches = text.find_all(r"\bAS\b")
    if as_matches:
        last = as_matches[-1]
        alias = strip_identifier_quotes(item[last.end() :].strip())
        expression = item[: last.start()].strip()
        if alias and expression:
            return expression, alias

    trailing = re.search(r"\s([\[\]\"\w]+)\s*$", text.masked)
    if trailing and text.depths[trailing.start(1)] == 0:
        candidate = item[trailing.start(1) : trailing.end(1)]
        expression = item[: trailing.start(1)].rstrip()
        bare = strip_identifier_quotes(candidate)
        last_word = re.search(r"\b(\w+)$", expression)
        operator_word = (
            last_word is not None
            and last_word.group(1).lower() in KEYWORDS | _OPERATOR_WORDS
            and last_word.group(1).lower() != "end"
        )
        if (
            expression
            and bare
            and bare.lower() not in KEYWORDS
            and not re.search(r"[-+*/%=<>|&,.]$", expression)
            and not re.match(r"^\d", bare)
            and not operator_word
        ):
            return expression, bare
    return item.strip(), None


def split_direction(item: str) -> OrderItem:
    match = re.search(r"\s+(ASC|DESC)\s*$", item, re.IGNORECASE)
    if match and SqlText(item).depths[match.start()] == 0:
        return OrderItem(item.strip(), item[: match.start()].strip(), match.group(1).upper())
    return OrderItem(item.strip(), item.strip())


def main_query_start(text: SqlText) -> int:
    """Offset of the outermost SELECT (after any CTE definitions)."""
    match = text.find(CLAUSE_PATTERNS["select"])
    return match.start() if match else -1


def parse_query(sql: str) -> ParsedQuery | None:
    """Parse the clauses of the main SELECT. ``None`` if no top-level SELECT."""
    text = SqlText(sql)
    start = main_query_start(text)
    if start == -1:
        return None

    def pos(name: str, after: int) -> re.Match[str] | None:
        return text.find(CLAUSE_PATTERNS[name], start=after)

    select_body_start = start + len("SELECT")
    set_op = pos("set_operation", select_body_start)
    from_match = pos("from", select_body_start)
    end_of_main = len(sql)

    boundaries = {
        name: pos(name, select_body_start)
        for name in ("where", "group_by", "having", "order_by", "offset", "option")
    }

    def clause_end(after: int) -> int:
        candidates = [
            m.start() for m in list(boundaries.values()) + [set_op] if m and m.start() > after
        ]
        return min(candidates, default=end_of_main)

    select_end = from_match.start() if from_match else clause_end(select_body_start)
    prefix = _SELECT_PREFIX_RE.match(sql[select_body_start:select_end])
    items_start = select_body_start + (prefix.end() if prefix else 0)
    select_items = []
    for raw in text.split(items_start, select_end):
        expression, alias = split_alias(raw)
        select_items.append(SelectItem(raw=raw, expression=expression, alias=alias))

    group_by: list[str] = []
    group_match = boundaries["group_by"]
    if group_match:
        group_by = text.split(group_match.end(), clause_end(group_match.start()))

    order_by: list[OrderItem] = []
    order_span = None
    order_match = boundaries["order_by"]
    if order_match:
        order_end = clause_end(order_match.start())
        while order_end > order_match.end() and sql[order_end - 1] in " \t\r\n;":
            order_end -= 1
        order_span = (order_match.end(), order_end)
        order_by = [split_direction(item) for item in text.split(order_match.end(), order_end)]

    return ParsedQuery(
        main_start=start,
        select_items=select_items,
        group_by=group_by,
        order_by=order_by,
        order_by_start=order_match.start() if order_match else None,
        order_by_span=order_span,
        select_span=(items_start, select_end),
        has_set_operation=set_op is not None,
        has_offset=boundaries["offset"] is not None,
    )


# ── Table references and CTEs ───────────────────────────────────────────


@dataclass
class TableReference:
    name: str
    start: int
    end: int


_NAME_PART = r"(?:\[[^\]]+\]|\"[^\"]+\"|[A-Za-z_#@][\w$#]*)"
_TABLE_NAME_RE = re.compile(r"\s+(" + _NAME_PART + r"(?:\." + _NAME_PART + r")*)")


def table_references(sql: str) -> list[TableReference]:
    """Names following FROM / JOIN at any depth (subqueries and TVFs skipped)."""
    text = SqlText(sql)
    references: list[TableReference] = []
    for keyword in text.find_all(r"\b(?:FROM|JOIN)\b", depth=None):
        found = _TABLE_NAME_RE.match(sql, keyword.end())
        if not found:
            continue
        rest = sql[found.end() :].lstrip()
        if rest.startswith("("):
            continue
        references.append(TableReference(found.group(1), found.start(1), found.end(1)))
    return references


def cte_names(sql: str) -> list[str]:
    """Names declared by a leading top-level WITH clause."""
    return [name for name, _, _ in cte_definitions(sql)[0]]


def cte_definitions(sql: str) -> tuple[list[tuple[str, str, str]], int]:
    """Parse a leading ``WITH`` clause.

    Returns:
        ``([(name, column_list, body), ...], main_start)`` where *body* is
        the text inside the CTE's parentheses and *main_start* the offset
        of the statement that follows the CTEs (0 without a WITH clause).
    """
    text = SqlText(sql)
    head = re.match(r"\s*;?\s*WITH\b", text.masked, re.IGNORECASE)
    if not head:
        return [], 0

    definitions: list[tuple[str, str, str]] = []
    cursor = head.end()
    definition_re = re.compile(
        r"\s*([A-Za-z_][\w]*|\[[^\]]+\])\s*(\([^()]*\))?\s*AS\s*\(", re.IGNORECASE
    )
    while True:
        found = definition_re.match(sql, cursor)
        if not found:
            break
        open_index = found.end() - 1
        close_index = text.closing_paren(open_index)
        if close_index == -1:
            break
        name = strip_identifier_quotes(found.group(1))
        definitions.append((name, found.group(2) or "", sql[open_index + 1 : close_index]))
        cursor = close_index + 1
        comma = re.match(r"\s*,", sql[cursor:])
        if not comma:
            break
        cursor += comma.end()

    return definitions, cursor
