"""Prompt text and response parsing for conversational refinement."""

import logging

from pydantic import ValidationError

from entities.shared.llm_json import parse_llm_json
from models import RefinementPlan, SemanticContext

logger = logging.getLogger(__name__)

REFINEMENT_MAX_TOKENS = 2000
REFINEMENT_TEMPERATURE = 0.3

UNPARSABLE_EXPLANATION = "I couldn't process that refinement. Please try rephrasing."

REFINEMENT_SYSTEM_PROMPT = """You are a SQL query refinement assistant. Your job is to understand \
natural language refinement requests and modify SQL queries accordingly.

You will receive the original question, the current SQL query, the semantic context used to \
generate it, and a refinement request (e.g. "Include inactive records too", "Change to last \
6 months").

Decide whether the change needs a modified semantic context (filters, terminology, time range) \
that will be re-compiled to SQL, or a small direct SQL edit.

Respond with ONLY a JSON object:
{
  "explanation": "I understand you want to...",
  "modifiedContext": { ...full semantic context with your changes... },
  "sqlModifications": {
    "type": "add_column" | "change_filter" | "change_limit" | "change_timerange",
    "details": {...}
  },
  "changeExplanation": "I changed the WHERE clause to ..."
}

Details per modification type:
- add_column: {"columns": ["table.column", ...]}
- change_limit: {"limit": 50}
- change_filter: {"condition": "Status = 'inactive'"}
- change_timerange: {"unit": "month", "value": 6}

Guidelines:
- Be conservative: only change what the user explicitly requested.
- Set modifiedContext OR sqlModifications, never both.
- If no change is needed or the request is unclear, return the explanation only."""


def build_refinement_prompt(
    question: str,
    current_sql: str,
    refinement_request: str,
    context: SemanticContext | None,
) -> str:
    context_json = context.model_dump_json(indent=2) if context is not None else "{}"
    return (
        f'Original Question: "{question}"\n\n'
        f"Current SQL:\n```sql\n{current_sql}\n```\n\n"
        f"Current Semantic Context:\n```json\n{context_json}\n```\n\n"
        f'Refinement Request: "{refinement_request}"\n\n'
        "Please analyze this refinement request and provide the appropriate modifications."
    )


def parse_refinement_response(response_text: str) -> RefinementPlan:
    """Parse the model's refinement plan.

    A response without JSON is treated as an explanation-only answer. A
    plan that sets both a modified context and direct edits keeps only the
    direct edits, which are the narrower change.
    """
    parsed = parse_llm_json(response_text)
    if parsed is None:
        return RefinementPlan(explanation=(response_text or "").strip() or UNPARSABLE_EXPLANATION)

    try:
        plan = RefinementPlan.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("Invalid refinement plan (%d error(s)); using explanation only", exc.error_count())
        explanation = parsed.get("explanation")
        return RefinementPlan(
            explanation=explanation if isinstance(explanation, str) else UNPARSABLE_EXPLANATION
        )

    if plan.modified_context is not None and plan.sql_modifications is not None:
        plan.modified_context = None
    if not plan.explanation:
        plan.explanation = "Processing your refinement..."
    return plan
