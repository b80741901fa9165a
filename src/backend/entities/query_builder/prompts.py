"""Prompt text and response parsing for model-based SQL generation."""

import json
import logging
from typing import Any

from entities.shared.llm_json import parse_llm_json
from models import ClarificationQuestion, GeneratedSql, SemanticContext

logger = logging.getLogger(__name__)

GENERATION_MAX_TOKENS = 2000
GENERATION_TEMPERATURE = 0.1

GENERATION_SYSTEM_PROMPT = """You are a SQL Server expert generating read-only reporting queries.

Rules:
- Generate a single SELECT statement (CTEs allowed). Never modify data.
- Use only the forms, fields and join paths provided.
- Qualify every table with the {schema} schema.
- Every non-aggregated column in SELECT must appear in GROUP BY.
- ORDER BY on an aggregated query may only use grouped columns, aggregates or SELECT aliases.
- If a term could refer to more than one field and no clarification was given,
  do not guess: ask for clarification instead.

Respond with JSON only."""


def _context_payload(context: SemanticContext) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "intent": context.intent.value,
        "forms": context.forms,
        "fields": context.fields,
    }
    if context.terminology:
        payload["terminology"] = [
            {
                "term": binding.term,
                "candidates": [
                    {"form": c.form, "field": c.field, **({"value": c.value} if c.value else {})}
                    for c in binding.candidates
                ],
            }
            for binding in context.terminology
        ]
    if context.join_paths:
        payload["join_paths"] = [
            {"left": j.left, "right": j.right, "on": j.condition} for j in context.join_paths
        ]
    if context.time_range is not None:
        payload["time_range"] = {"unit": context.time_range.unit, "value": context.time_range.value}
    if context.filters:
        payload["filters"] = [f.model_dump() for f in context.filters]
    return payload


def build_generation_prompt(
    context: SemanticContext,
    clarifications: dict[str, str] | None = None,
    prior_sql: str | None = None,
) -> str:
    """Build the user message for one generation call.

    Args:
        context: Discovered semantic context, including the question.
        clarifications: Answers already given, keyed by clarification id.
        prior_sql: SQL of an earlier step the new query may build on.

    Returns:
        Prompt asking for the JSON shape parsed by ``parse_generation_response``.
    """
    sections = [
        "Generate a SQL query to answer the following user question.",
        "",
        "## User Question",
        context.question,
        "",
        "## Semantic Context",
        json.dumps(_context_payload(context), indent=2, default=str),
    ]
    answers = {**context.clarifications, **(clarifications or {})}
    if answers:
        sections += ["", "## Clarifications", json.dumps(answers, indent=2)]
    if prior_sql:
        sections += [
            "",
            "## Previous Step SQL",
            "The query may build on this statement (for example as a CTE):",
            prior_sql,
        ]
    sections += [
        "",
        "Respond in JSON format:",
        "{",
        '  "sql": "<SELECT statement, empty when clarification is needed>",',
        '  "explanation": "<one or two sentences>",',
        '  "needs_clarification": <true|false>,',
        '  "clarifications": [{"id": "<term>", "semantic": "<concept>", '
        '"question": "<question>", "options": [{"label": "<label>", "value": "<value>"}]}],',
        '  "reasoning": "<why clarification is needed, if it is>"',
        "}",
    ]
    return "\n".join(sections)


def _clarifications(raw: Any) -> list[ClarificationQuestion]:
    if not isinstance(raw, list):
        return []
    questions: list[ClarificationQuestion] = []
    for item in raw:
        try:
            questions.append(ClarificationQuestion.model_validate(item))
        except Exception:  # noqa: BLE001
            logger.warning("Skipping unparseable clarification: %s", str(item)[:200])
    return questions


def parse_generation_response(response_text: str) -> GeneratedSql:
    """Parse a generation response.

    Args:
        response_text: Raw model output.

    Returns:
        ``GeneratedSql``; ``needs_clarification`` is forced on when the
        model returned clarification questions without SQL.

    Raises:
        ValueError: If no JSON object can be extracted.
    """
    parsed = parse_llm_json(response_text)
    if parsed is None:
        raise ValueError(f"Failed to parse generation response: {response_text[:200]}")

    sql = str(parsed.get("sql") or "").strip()
    clarifications = _clarifications(parsed.get("clarifications"))
    needs_clarification = bool(parsed.get("needs_clarification")) or (
        not sql and bool(clarifications)
    )
    reasoning = parsed.get("reasoning")
    return GeneratedSql(
        sql="" if needs_clarification else sql,
        explanation=str(parsed.get("explanation") or ""),
        needs_clarification=needs_clarification,
        clarifications=clarifications if needs_clarification else [],
        reasoning=str(reasoning) if reasoning else None,
    )
