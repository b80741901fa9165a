"""
Hybrid pattern + model intent classifier.

The fast path runs the keyword pattern families; a match at or above the
acceptance threshold is returned without any network call. Otherwise a
single model completion is issued under a timeout. Every failure on the
model path degrades to a ``legacy_unknown`` fallback result, so
``classify`` never raises for model or parsing problems.
"""

import asyncio
import logging
import time

from config.settings import Settings
from entities.intent_classifier.cache import ClassificationCache
from entities.intent_classifier.patterns import (
    ConfidenceBands,
    PatternFamily,
    PatternMatch,
    default_patterns,
    match_patterns,
)
from entities.intent_classifier.prompts import (
    CLASSIFICATION_MAX_TOKENS,
    CLASSIFICATION_SYSTEM_PROMPT,
    CLASSIFICATION_TEMPERATURE,
    build_classification_prompt,
    parse_classification_response,
)
from entities.shared.audit import AuditDispatcher
from entities.shared.errors import QuestionValidationError
from entities.shared.protocols import ModelRouter
from models import ClassificationOptions, ClassificationResult, QueryIntent

logger = logging.getLogger(__name__)


def fallback_result(reason: str, latency_ms: float = 0.0) -> ClassificationResult:
    """Degraded classification used when the model path fails."""
    return ClassificationResult(
        intent=QueryIntent.LEGACY_UNKNOWN,
        confidence=0.0,
        method="fallback",
        reasoning=f"Classification failed: {reason}",
        latency_ms=latency_ms,
    )


class IntentClassifier:
    """Classifies questions into a ``QueryIntent``.

    Holds only its cache and collaborator references; construct one per
    application and share it.

    Args:
        model_router: Model selection and completion collaborator.
        audit: Dispatcher for fire-and-forget classification events.
        cache: Result cache (a fresh one with a 1 hour TTL when ``None``).
        patterns: Pattern families to run (defaults to every family).
        acceptance_threshold: Minimum pattern confidence for the fast path.
        default_model_id: Model used when routing fails.
        timeout_seconds: Upper bound on the model call.
    """

    def __init__(
        self,
        model_router: ModelRouter,
        audit: AuditDispatcher,
        *,
        cache: ClassificationCache | None = None,
        patterns: list[PatternFamily] | None = None,
        acceptance_threshold: float = 0.85,
        default_model_id: str = "gpt-4o",
        timeout_seconds: float = 60.0,
    ) -> None:
        self._model_router = model_router
        self._audit = audit
        self._cache = cache if cache is not None else ClassificationCache()
        self._patterns = patterns if patterns is not None else default_patterns()
        self._acceptance_threshold = acceptance_threshold
        self._default_model_id = default_model_id
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(
        cls, settings: Settings, model_router: ModelRouter, audit: AuditDispatcher
    ) -> "IntentClassifier":
        """Build a classifier with thresholds and TTL taken from ``Settings``."""
        bands = ConfidenceBands(
            high=settings.pattern_high_confidence,
            medium=settings.pattern_medium_confidence,
            low=settings.pattern_low_confidence,
        )
        return cls(
            model_router,
            audit,
            cache=ClassificationCache(ttl_seconds=settings.classification_cache_ttl_seconds),
            patterns=default_patterns(bands),
            acceptance_threshold=settings.pattern_acceptance_threshold,
            default_model_id=settings.classifier_model,
            timeout_seconds=settings.model_timeout_seconds,
        )

    @property
    def cache(self) -> ClassificationCache:
        return self._cache

    async def classify(
        self,
        question: str,
        scope_id: str,
        options: ClassificationOptions | None = None,
    ) -> ClassificationResult:
        """Classify a question.

        Args:
            question: User's natural-language question.
            scope_id: Customer or data-scope identifier (part of the cache key).
            options: Cache, model and timeout overrides.

        Returns:
            Classification result. Model failures produce a ``fallback``
            result instead of an exception.

        Raises:
            QuestionValidationError: If the question is blank.
        """
        if not question or not question.strip():
            raise QuestionValidationError("Question text is required")

        options = options or ClassificationOptions()
        start = time.perf_counter()
        logger.info("Classifying question: %s", question[:100])

        if options.enable_cache:
            cached = self._cache.get(question, scope_id)
            if cached is not None:
                logger.info("Classification cache hit (intent=%s)", cached.intent.value)
                return cached

        best: PatternMatch | None = None
        try:
            matches = match_patterns(question, self._patterns)
            best = matches[0] if matches else None

            if best is not None and best.confidence >= self._acceptance_threshold:
                result = ClassificationResult(
                    intent=best.intent,
                    confidence=best.confidence,
                    method="pattern",
                    matched_patterns=list(best.matched_patterns),
                    latency_ms=self._elapsed_ms(start),
                )
                logger.info(
                    "Pattern match: intent=%s confidence=%.2f patterns=%s",
                    result.intent.value,
                    result.confidence,
                    result.matched_patterns,
                )
                self._finish(question, scope_id, result, cache=options.enable_cache)
                return result

            logger.info(
                "Low pattern confidence (%.2f), using model classification",
                best.confidence if best else 0.0,
            )
            ai_result = await self._classify_with_model(question, scope_id, options)
        except Exception as exc:
            latency = self._elapsed_ms(start)
            logger.warning("Classification failed after %.0fms: %s", latency, exc)
            result = fallback_result(str(exc) or type(exc).__name__, latency)
            self._audit.dispatch(
                "intent_classification", scope_id=scope_id, question=question, **_event(result)
            )
            return result

        result = ai_result.model_copy(update={"latency_ms": self._elapsed_ms(start)})
        logger.info(
            "Model classification: intent=%s confidence=%.2f (%.0fms)",
            result.intent.value,
            result.confidence,
            result.latency_ms,
        )

        if best is not None and best.intent != result.intent:
            logger.warning(
                "Pattern/model disagreement: pattern=%s (%.2f) model=%s (%.2f)",
                best.intent.value,
                best.confidence,
                result.intent.value,
                result.confidence,
            )
            self._audit.dispatch(
                "intent_disagreement",
                scope_id=scope_id,
                question=question,
                pattern_intent=best.intent.value,
                pattern_confidence=best.confidence,
                ai_intent=result.intent.value,
                ai_confidence=result.confidence,
            )

        self._finish(question, scope_id, result, cache=options.enable_cache)
        return result

    async def _classify_with_model(
        self,
        question: str,
        scope_id: str,
        options: ClassificationOptions,
    ) -> ClassificationResult:
        """Select a model, issue one completion, and parse the response."""
        model_id = options.model_id
        if model_id is None:
            try:
                model_id = await self._model_router.select_model(question, scope_id)
            except Exception:
                logger.warning(
                    "Model router unavailable, using default model %s",
                    self._default_model_id,
                    exc_info=True,
                )
                model_id = self._default_model_id

        timeout = options.timeout_seconds or self._timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._model_router.complete(
                    CLASSIFICATION_SYSTEM_PROMPT,
                    build_classification_prompt(question),
                    model_id=model_id,
                    max_tokens=CLASSIFICATION_MAX_TOKENS,
                    temperature=CLASSIFICATION_TEMPERATURE,
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise TimeoutError(f"model classification timed out after {timeout}s") from exc
        return parse_classification_response(response)

    def _finish(
        self,
        question: str,
        scope_id: str,
        result: ClassificationResult,
        *,
        cache: bool,
    ) -> None:
        if cache:
            self._cache.set(question, scope_id, result)
        self._audit.dispatch(
            "intent_classification", scope_id=scope_id, question=question, **_event(result)
        )

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000


def _event(result: ClassificationResult) -> dict:
    return {
        "intent": result.intent.value,
        "confidence": result.confidence,
        "method": result.method,
        "latency_ms": result.latency_ms,
        "matched_patterns": result.matched_patterns,
        "reasoning": result.reasoning,
    }
