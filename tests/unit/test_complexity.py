"""Unit tests for question complexity scoring and clarification helpers."""

from __future__ import annotations

from entities.orchestrator import (
    analyze_complexity,
    apply_clarifications,
    intent_clarification,
    term_clarifications,
)
from entities.orchestrator.clarification import clarified_classification
from models import ClassificationResult, FieldBinding, QueryIntent, SemanticContext, TermBinding


class TestAnalyzeComplexity:
    """Keyword scoring and level boundaries."""

    def test_simple_question(self) -> None:
        analysis = analyze_complexity("Show all patients")

        assert analysis.score == 0
        assert analysis.level == "simple"
        assert analysis.strategy == "auto"
        assert analysis.reasons == ["Simple single-entity query"]

    def test_score_four_is_still_simple(self) -> None:
        analysis = analyze_complexity("Compare the average and total wound area")

        assert analysis.score == 4
        assert analysis.level == "simple"
        assert analysis.reasons == ["Multiple aggregations (2)", "Comparison detected"]

    def test_multi_step_with_comparison_is_medium(self) -> None:
        analysis = analyze_complexity("First list the clinics, then compare their wound counts")

        assert analysis.score == 5
        assert analysis.level == "medium"
        assert analysis.strategy == "preview"

    def test_complex_question(self) -> None:
        analysis = analyze_complexity(
            "Compare healing rates then show the trend over time for each clinic"
        )

        assert analysis.score == 9
        assert analysis.level == "complex"
        assert analysis.strategy == "inspect"
        assert "Multi-step question detected" in analysis.reasons

    def test_score_capped_at_ten(self) -> None:
        analysis = analyze_complexity(
            "First count and average patient wound assessment visits per clinic per month, "
            "then compare the trend over time versus last year"
        )

        assert analysis.score == 10

    def test_many_entities(self) -> None:
        analysis = analyze_complexity("Patients with a wound and a recent visit")

        assert "Multiple entities detected (3)" in analysis.reasons


class TestClarificationHelpers:
    """Clarification questions and merging answers back."""

    def test_intent_question_lists_classified_intent_first(self) -> None:
        classification = ClassificationResult(
            intent=QueryIntent.TOP_K, confidence=0.3, method="ai"
        )

        question = intent_clarification(classification)

        assert question.id == "intent"
        assert question.options[0].value == "top_k"
        assert "legacy_unknown" not in [o.value for o in question.options]

    def test_term_clarification_uses_bound_values(self) -> None:
        term = TermBinding(
            term="active",
            semantic="status",
            candidates=[
                FieldBinding(form="Patient", field="status", value="active"),
                FieldBinding(form="Wound", field="is_open"),
            ],
        )

        [question] = term_clarifications([term])

        assert question.semantic == "status"
        assert [o.value for o in question.options] == ["active", "Wound.is_open"]

    def test_apply_clarifications_narrows_candidates(self) -> None:
        context = SemanticContext(
            terminology=[
                TermBinding(
                    term="type",
                    candidates=[
                        FieldBinding(form="Wound", field="wound_type"),
                        FieldBinding(form="Assessment", field="assessment_type"),
                    ],
                )
            ]
        )

        merged = apply_clarifications(context, {"type": "Assessment.assessment_type"})

        assert [c.field for c in merged.terminology[0].candidates] == ["assessment_type"]
        assert merged.ambiguous_terms() == []
        assert len(context.terminology[0].candidates) == 2

    def test_clarified_classification(self) -> None:
        classification = ClassificationResult(
            intent=QueryIntent.LEGACY_UNKNOWN, confidence=0.0, method="fallback"
        )

        updated = clarified_classification(classification, {"intent": "pivot"})
        ignored = clarified_classification(classification, {"intent": "nonsense"})

        assert updated.intent == QueryIntent.PIVOT
        assert updated.confidence == 1.0
        assert updated.method == "ai"
        assert ignored is classification
