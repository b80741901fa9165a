"""Prompt text and response parsing for model-based intent classification."""

from entities.shared.llm_json import parse_llm_json
from models import INTENT_DESCRIPTIONS, ClassificationResult, QueryIntent

CLASSIFICATION_SYSTEM_PROMPT = """You are an intent classifier for healthcare data queries.
Your task is to classify user questions into one of the predefined intent types.

Be precise and consider the context carefully. Return your classification with a confidence score."""

CLASSIFICATION_MAX_TOKENS = 200
CLASSIFICATION_TEMPERATURE = 0.1


def build_classification_prompt(question: str) -> str:
    """Build the user message listing every intent with its description.

    Args:
        question: The user's question.

    Returns:
        Prompt asking for ``{intent, confidence, reasoning}`` JSON.
    """
    intents = "\n".join(
        f"- {intent.value}: {INTENT_DESCRIPTIONS[intent]}" for intent in QueryIntent
    )
    return (
        "Classify the following query into one of these intent types:\n\n"
        f"Available intents:\n{intents}\n\n"
        f'Query: "{question}"\n\n'
        "Respond in JSON format:\n"
        "{\n"
        '  "intent": "<intent_type>",\n'
        '  "confidence": <0.0-1.0>,\n'
        '  "reasoning": "<brief explanation>"\n'
        "}"
    )


def parse_classification_response(response_text: str) -> ClassificationResult:
    """Parse the model response into an ``ai`` classification.

    Args:
        response_text: Raw model output.

    Returns:
        ``ClassificationResult`` with method ``ai``.

    Raises:
        ValueError: If the response is not JSON, names an unknown intent,
            or carries a confidence outside [0, 1].
    """
    parsed = parse_llm_json(response_text)
    if parsed is None:
        raise ValueError("Unparsable classification response")

    try:
        intent = QueryIntent(str(parsed.get("intent", "")).strip())
    except ValueError as exc:
        raise ValueError(f"Unknown intent: {parsed.get('intent')!r}") from exc

    try:
        confidence = float(parsed.get("confidence", 0.0))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid confidence: {parsed.get('confidence')!r}") from exc
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(f"Confidence out of range: {confidence}")

    reasoning = parsed.get("reasoning")
    return ClassificationResult(
        intent=intent,
        confidence=confidence,
        method="ai",
        reasoning=str(reasoning) if reasoning is not None else None,
    )
