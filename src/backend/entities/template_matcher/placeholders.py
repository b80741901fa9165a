"""
Placeholder extraction for matched templates.

Values come, in priority order, from clarification answers, a single
known option named in the question, semantic-specific extraction
(time windows, numbers), and finally the placeholder's default. A
required placeholder that is still unbound, or whose answer is not one
of its options (or not a whole number for numeric semantics), becomes
a clarification question tagged with its semantic.
"""

import re
from dataclasses import dataclass, field
from typing import Any

from entities.shared.substitution import as_expression, substitute_placeholders
from models import (
    ClarificationOption,
    ClarificationQuestion,
    QueryTemplate,
    TemplatePlaceholder,
)

_TIME_WINDOW_RE = re.compile(r"(?:last|past|within)\s+(\d+)\s+(day|week|month|year)s?", re.I)
_NUMBER_RE = re.compile(r"\b(\d+)\b")
_NUMERIC_SEMANTICS = {"number", "count", "limit", "age", "days", "threshold"}


@dataclass
class PlaceholderBinding:
    """Outcome of binding a template's placeholders for one question."""

    sql: str
    values: dict[str, Any] = field(default_factory=dict)
    clarifications: list[ClarificationQuestion] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.clarifications


def _options_in_question(question: str, placeholder: TemplatePlaceholder) -> list[str]:
    lowered = question.lower()
    return [option for option in placeholder.options if option.lower() in lowered]


def _is_time_window(placeholder: TemplatePlaceholder) -> bool:
    name = placeholder.name.lower()
    return placeholder.semantic.lower() == "time_window" or "window" in name or "period" in name


def _is_numeric(placeholder: TemplatePlaceholder) -> bool:
    return _is_time_window(placeholder) or placeholder.semantic.lower() in _NUMERIC_SEMANTICS


def _extract(question: str, placeholder: TemplatePlaceholder) -> Any:
    if _is_time_window(placeholder):
        found = _TIME_WINDOW_RE.search(question)
        if found:
            return int(found.group(1))

    if placeholder.semantic.lower() in _NUMERIC_SEMANTICS:
        found = _NUMBER_RE.search(question)
        if found:
            return int(found.group(1))

    return None


def _answer_value(placeholder: TemplatePlaceholder, answer: Any) -> Any:
    """Accepted value of a clarification answer, or ``None`` when it is rejected.

    Option placeholders only take one of their options. Numeric and
    time-window placeholders only take whole numbers. Anything else is
    kept as text and quoted on substitution.
    """
    text = str(answer).strip()
    if placeholder.options:
        return next((o for o in placeholder.options if o.lower() == text.lower()), None)
    if _is_numeric(placeholder):
        return int(text) if text.isdigit() else None
    return text or None


def clarification_for(placeholder: TemplatePlaceholder) -> ClarificationQuestion:
    """Build the open question asked when a placeholder cannot be bound."""
    label = placeholder.semantic.replace("_", " ") or placeholder.name.replace("_", " ")
    return ClarificationQuestion(
        id=placeholder.name,
        semantic=placeholder.semantic,
        question=placeholder.description or f"Which {label}?",
        options=[ClarificationOption(label=option, value=option) for option in placeholder.options],
        allow_custom=not placeholder.options,
    )


def bind_placeholders(
    template: QueryTemplate,
    question: str,
    answers: dict[str, str] | None = None,
) -> PlaceholderBinding:
    """Bind every placeholder of *template* for *question*.

    Args:
        template: Matched template.
        question: User's question.
        answers: Clarification answers keyed by placeholder name.

    Returns:
        ``PlaceholderBinding`` with the filled SQL (unbound tokens left in
        place) and a clarification per unbound required placeholder.
    """
    answers = answers or {}
    values: dict[str, Any] = {}
    clarifications: list[ClarificationQuestion] = []

    for placeholder in template.placeholders:
        if placeholder.name in answers:
            answered = _answer_value(placeholder, answers[placeholder.name])
            if answered is None:
                # Rejected answers are asked again rather than replaced by a default
                if placeholder.required:
                    clarifications.append(clarification_for(placeholder))
                continue
            values[placeholder.name] = answered
            continue

        named = _options_in_question(question, placeholder)
        if len(named) == 1:
            values[placeholder.name] = named[0]
            continue

        extracted = _extract(question, placeholder)
        if extracted is not None:
            values[placeholder.name] = extracted
            continue

        if placeholder.default_value is not None and len(named) == 0:
            values[placeholder.name] = as_expression(placeholder.default_value)
            continue

        if placeholder.required:
            clarifications.append(clarification_for(placeholder))

    filled = substitute_placeholders(template.sql_template, values)
    return PlaceholderBinding(sql=filled.sql, values=values, clarifications=clarifications)
