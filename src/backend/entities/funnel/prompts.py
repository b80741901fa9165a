"""Prompt text and response parsing for funnel decomposition."""

import re

from pydantic import ValidationError

from entities.shared.llm_json import parse_llm_json
from models import Decomposition, DecomposedStep

DECOMPOSITION_MAX_TOKENS = 2048
DECOMPOSITION_TEMPERATURE = 0.1

DECOMPOSITION_SYSTEM_PROMPT = """You are a clinical data analyst assistant. Break a complex analytical \
question about wound assessment data into smaller, incremental sub-questions. Each sub-question \
must be simple, clear and answerable with a single straightforward SQL query.

Each step builds on the data produced by earlier steps, gradually filtering, aggregating or \
comparing until the original question is answered. Every step after the first must explicitly \
reference the step(s) it uses, e.g. "For each dressing type identified in Step 1, ...".

Use `depends_on` to list the steps a sub-question builds on (null when it stands alone, a number \
for one dependency, a list of numbers for several). Steps are numbered 1..N with no gaps and may \
only depend on earlier steps. Avoid redundant steps.

If the question matches one of these analytical templates, name it; otherwise use "None":
- Healing Rate Comparison: compare healing rates across treatments or patient groups.
- Time-to-Heal Analysis: average healing durations or healing trajectories.
- Wound Size Trend: changes in wound size or depth over time.
- Resource Utilization Analysis: resource usage such as dressing changes per patient.
- Treatment Effectiveness Overview: overall treatment effectiveness and outcomes.

Respond with ONLY a JSON object, no other text."""

_RESPONSE_SHAPE = """{
  "original_question": "<the question>",
  "matched_template": "<template name or None>",
  "sub_questions": [
    {"step": 1, "question": "<first sub-question>", "depends_on": null},
    {"step": 2, "question": "<second sub-question using Step 1>", "depends_on": 1}
  ]
}"""

# Conjunctions that usually separate independent asks
_SPLIT_RE = re.compile(
    r"\s*(?:;|,?\s+and\s+then\s+|,?\s+then\s+|,?\s+and\s+also\s+|,\s+and\s+|\s+and\s+)\s*",
    re.IGNORECASE,
)
_MIN_PART_WORDS = 3


def build_decomposition_prompt(question: str, schema_context: str | None = None) -> str:
    """Build the user message for a decomposition request.

    Args:
        question: The compound question.
        schema_context: Optional database schema notes to ground the steps.

    Returns:
        Prompt asking for the decomposition JSON.
    """
    prompt = f"ORIGINAL QUESTION:\n{question}\n\nRespond in JSON format:\n{_RESPONSE_SHAPE}"
    if schema_context:
        prompt += f"\n\nDATABASE SCHEMA CONTEXT:\n{schema_context}"
    return prompt


def validate_steps(steps: list[DecomposedStep]) -> None:
    """Check that steps are numbered 1..N and only depend on earlier steps.

    Raises:
        ValueError: On duplicate, missing or forward-referencing steps.
    """
    if not steps:
        raise ValueError("Decomposition has no sub-questions")

    seen: set[int] = set()
    for step in steps:
        if step.step in seen:
            raise ValueError(f"Duplicate step number found: {step.step}")
        seen.add(step.step)
        for dependency in step.depends_on:
            if dependency >= step.step:
                raise ValueError(f"Step {step.step} cannot depend on later step {dependency}")
            if dependency not in seen:
                raise ValueError(f"Step {step.step} depends on non-existent step {dependency}")

    if sorted(seen) != list(range(1, len(seen) + 1)):
        raise ValueError("Sub-questions must form a continuous sequence starting from 1")


def parse_decomposition_response(response_text: str, question: str) -> Decomposition:
    """Parse and validate the model's decomposition.

    Raises:
        ValueError: If the response is not JSON, does not match the
            expected shape, or its steps are inconsistent.
    """
    parsed = parse_llm_json(response_text)
    if parsed is None:
        raise ValueError("Unparsable decomposition response")

    parsed.setdefault("original_question", question)
    try:
        decomposition = Decomposition.model_validate(parsed)
    except ValidationError as exc:
        raise ValueError(f"Invalid decomposition format: {exc.error_count()} error(s)") from exc

    decomposition.sub_questions.sort(key=lambda s: s.step)
    validate_steps(decomposition.sub_questions)
    return decomposition


def heuristic_decomposition(question: str) -> Decomposition:
    """Split a question on conjunctions when the model cannot decompose it.

    Fragments shorter than three words are folded into the previous part,
    so "patients with diabetes and hypertension" stays one step. Each step
    depends on the one before it.
    """
    text = question.strip().rstrip("?").strip()
    parts: list[str] = []
    for fragment in _SPLIT_RE.split(text):
        fragment = fragment.strip(" ,")
        if not fragment:
            continue
        if parts and len(fragment.split()) < _MIN_PART_WORDS:
            parts[-1] = f"{parts[-1]} and {fragment}"
        else:
            parts.append(fragment)
    if len(parts) > 1 and len(parts[0].split()) < _MIN_PART_WORDS:
        parts[1] = f"{parts[0]} and {parts[1]}"
        parts.pop(0)
    if not parts:
        parts = [question.strip()]

    steps = [
        DecomposedStep(
            step=index,
            question=part[0].upper() + part[1:],
            depends_on=[index - 1] if index > 1 else [],
        )
        for index, part in enumerate(parts, start=1)
    ]
    return Decomposition(original_question=question, sub_questions=steps)
