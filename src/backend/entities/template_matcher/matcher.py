"""
Template matching against the published query catalog.

Scores each approved template on three signals (example similarity,
keyword overlap, intent vocabulary), blends the result with the
template's historical success rate, and applies a two-threshold policy:
strong candidates are applied, weaker ones are only suggested.
"""

import logging

from config.settings import Settings
from entities.shared.protocols import TemplateCatalog
from models import QueryTemplate, TemplateCandidate, TemplateMatchResult

logger = logging.getLogger(__name__)

APPROVED_STATUS = "approved"

# Score weights
EXAMPLE_EXACT_BONUS = 0.5
EXAMPLE_NEAR_BONUS = 0.3
KEYWORD_WEIGHT = 0.4
INTENT_WEIGHT = 0.1

_INTENT_VOCABULARY: dict[str, list[str]] = {
    "query": ["show", "list", "get", "find", "what", "how many"],
    "aggregate": ["count", "total", "average", "sum", "mean"],
    "comparison": ["compare", "versus", "vs", "difference"],
    "trend": ["trend", "over time", "timeline", "history"],
    "ranking": ["top", "bottom", "best", "worst", "highest", "lowest"],
}

# QueryIntent values map onto the same vocabulary
_INTENT_ALIASES: dict[str, str] = {
    "aggregation_by_category": "aggregate",
    "time_series_trend": "trend",
    "top_k": "ranking",
    "join_analysis": "comparison",
    "assessment_correlation_check": "comparison",
    "latest_per_entity": "query",
    "as_of_state": "query",
    "note_collection": "query",
}


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]; 1.0 for two empty strings."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein_distance(a, b)) / longer


def intent_keywords(intent: str) -> list[str]:
    """Vocabulary associated with a template intent (empty when unknown)."""
    key = intent.lower()
    return _INTENT_VOCABULARY.get(_INTENT_ALIASES.get(key, key), [])


class TemplateMatcher:
    """Ranks catalog templates for a question.

    Args:
        catalog: Source of published templates.
        application_threshold: Composite score required to apply a template.
        suggestion_threshold: Composite score required to suggest one.
        top_n: Maximum suggestions returned.
        success_rate_weight: Weight of historical success in the composite.
        exact_similarity: Example similarity for the full bonus.
        near_similarity: Example similarity for the partial bonus.

    Raises:
        ValueError: If the application threshold is not above the
            suggestion threshold.
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        *,
        application_threshold: float = 0.7,
        suggestion_threshold: float = 0.4,
        top_n: int = 5,
        success_rate_weight: float = 0.2,
        exact_similarity: float = 0.9,
        near_similarity: float = 0.7,
    ) -> None:
        if application_threshold <= suggestion_threshold:
            raise ValueError(
                "application_threshold must be greater than suggestion_threshold "
                f"({application_threshold} <= {suggestion_threshold})"
            )
        if not 0.0 <= success_rate_weight <= 1.0:
            raise ValueError("success_rate_weight must be within [0, 1]")
        self._catalog = catalog
        self.application_threshold = application_threshold
        self.suggestion_threshold = suggestion_threshold
        self._top_n = top_n
        self._success_rate_weight = success_rate_weight
        self._exact_similarity = exact_similarity
        self._near_similarity = near_similarity

    @classmethod
    def from_settings(cls, settings: Settings, catalog: TemplateCatalog) -> "TemplateMatcher":
        return cls(
            catalog,
            application_threshold=settings.template_application_threshold,
            suggestion_threshold=settings.template_suggestion_threshold,
            top_n=settings.template_top_n,
            success_rate_weight=settings.template_success_rate_weight,
            exact_similarity=settings.example_exact_similarity,
            near_similarity=settings.example_near_similarity,
        )

    async def match(self, question: str, scope_id: str) -> TemplateMatchResult:
        """Match a question against the scope's catalog.

        Catalog failures are logged and treated as an empty catalog.

        Args:
            question: User's question.
            scope_id: Customer or data-scope identifier.

        Returns:
            ``TemplateMatchResult`` with the applied flag and suggestions.
        """
        try:
            templates = await self._catalog.list_templates(scope_id)
        except Exception:
            logger.exception("Template catalog unavailable for scope %s", scope_id)
            return TemplateMatchResult(applied=False, message="Template catalog unavailable")

        suggestions = self.rank(question, templates)
        if not suggestions:
            return TemplateMatchResult(applied=False, message="No matching templates")

        best = suggestions[0]
        applied = best.composite_score >= self.application_threshold
        logger.info(
            "Template match for '%s': best=%s score=%.3f applied=%s (%d suggestions)",
            question[:100],
            best.template.id,
            best.composite_score,
            applied,
            len(suggestions),
        )
        return TemplateMatchResult(
            applied=applied,
            best=best,
            suggestions=suggestions,
            confidence=best.composite_score,
            message=(
                f"Matched template '{best.template.name}'"
                if applied
                else f"Best template '{best.template.name}' below application threshold"
            ),
        )

    def rank(self, question: str, templates: list[QueryTemplate]) -> list[TemplateCandidate]:
        """Score approved templates and keep those above the suggestion threshold.

        Args:
            question: User's question.
            templates: Catalog entries (any status).

        Returns:
            Candidates sorted by descending composite score, at most ``top_n``.
        """
        approved = [t for t in templates if t.status.lower() == APPROVED_STATUS]
        scored = [self.score(question, template) for template in approved]
        kept = [c for c in scored if c.composite_score >= self.suggestion_threshold]
        kept.sort(key=lambda c: c.composite_score, reverse=True)
        return kept[: self._top_n]

    def score(self, question: str, template: QueryTemplate) -> TemplateCandidate:
        """Score a single template against a question."""
        question_lower = question.lower().strip()
        base = 0.0

        matched_example: str | None = None
        best_similarity = 0.0
        for example in template.question_examples:
            similarity = string_similarity(question_lower, example.lower().strip())
            if similarity > best_similarity:
                best_similarity = similarity
                matched_example = example
        if best_similarity >= self._exact_similarity:
            base += EXAMPLE_EXACT_BONUS
        elif best_similarity >= self._near_similarity:
            base += EXAMPLE_NEAR_BONUS
        else:
            matched_example = None

        matched_keywords = [kw for kw in template.keywords if kw.lower() in question_lower]
        if template.keywords:
            base += len(matched_keywords) / len(template.keywords) * KEYWORD_WEIGHT

        vocabulary = intent_keywords(template.intent) if template.intent else []
        if vocabulary:
            hits = sum(1 for word in vocabulary if word in question_lower)
            base += hits / len(vocabulary) * INTENT_WEIGHT

        base = min(base, 1.0)
        success_rate = template.success_rate
        weight = self._success_rate_weight
        composite = min(base * (1 - weight) + success_rate * weight, 1.0)

        return TemplateCandidate(
            template=template,
            base_score=round(base, 6),
            matched_keywords=matched_keywords,
            matched_example=matched_example,
            example_similarity=round(best_similarity, 6),
            success_rate=success_rate,
            composite_score=round(composite, 6),
        )
