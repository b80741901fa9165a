"""Clarification questions raised by the orchestrator, and merging the answers."""

from models import (
    INTENT_DESCRIPTIONS,
    ClarificationOption,
    ClarificationQuestion,
    ClassificationResult,
    FieldBinding,
    QueryIntent,
    SemanticContext,
    TermBinding,
)

INTENT_CLARIFICATION_ID = "intent"


def _binding_value(binding: FieldBinding) -> str:
    return binding.value if binding.value is not None else f"{binding.form}.{binding.field}"


def intent_clarification(classification: ClassificationResult) -> ClarificationQuestion:
    """Ask which kind of analysis is wanted when the intent is not actionable.

    The classified intent, when known, is offered first.
    """
    intents = [intent for intent in QueryIntent if intent != QueryIntent.LEGACY_UNKNOWN]
    if classification.intent in intents:
        intents.remove(classification.intent)
        intents.insert(0, classification.intent)
    return ClarificationQuestion(
        id=INTENT_CLARIFICATION_ID,
        semantic="intent",
        question="What kind of analysis are you looking for?",
        options=[
            ClarificationOption(
                label=INTENT_DESCRIPTIONS[intent], value=intent.value, description=intent.value
            )
            for intent in intents
        ],
    )


def term_clarifications(terms: list[TermBinding]) -> list[ClarificationQuestion]:
    """One question per term with several plausible field bindings."""
    questions = []
    for term in terms:
        semantic = term.semantic or next((c.semantic for c in term.candidates if c.semantic), "")
        questions.append(
            ClarificationQuestion(
                id=term.term,
                semantic=semantic,
                question=f'Which "{term.term}" do you mean?',
                options=[
                    ClarificationOption(
                        label=f"{c.form}.{c.field}" + (f" = {c.value}" if c.value else ""),
                        value=_binding_value(c),
                        description=c.semantic or None,
                    )
                    for c in term.candidates
                ],
            )
        )
    return questions


def apply_clarifications(context: SemanticContext, answers: dict[str, str]) -> SemanticContext:
    """Merge *answers* into a copy of *context*.

    Answered terms keep only the chosen binding when the answer names one
    of the candidates.
    """
    merged = context.model_copy(deep=True)
    merged.clarifications.update(answers)
    for binding in merged.terminology:
        answer = answers.get(binding.term)
        if answer is None:
            continue
        chosen = [c for c in binding.candidates if _binding_value(c) == answer]
        if chosen:
            binding.candidates = chosen
    return merged


def clarified_classification(
    classification: ClassificationResult, answers: dict[str, str]
) -> ClassificationResult:
    """Apply an answered intent question to a classification.

    The confirmed intent is reported with confidence 1.0 and method
    ``ai``. Unknown intent values are ignored.
    """
    answer = answers.get(INTENT_CLARIFICATION_ID)
    if not answer:
        return classification
    try:
        intent = QueryIntent(answer)
    except ValueError:
        return classification
    return classification.model_copy(
        update={
            "intent": intent,
            "confidence": 1.0,
            "method": "ai",
            "reasoning": "Intent confirmed by the user",
        }
    )
