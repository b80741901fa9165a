"""Unit tests for decomposition prompt building and response parsing."""

from __future__ import annotations

import json

import pytest
from entities.funnel import heuristic_decomposition, parse_decomposition_response
from entities.funnel.prompts import build_decomposition_prompt, validate_steps
from models import DecomposedStep

QUESTION = "Which dressing types heal fastest for diabetic ulcers?"


def _response(sub_questions: list[dict], template: str = "None") -> str:
    return json.dumps(
        {
            "original_question": QUESTION,
            "matched_template": template,
            "sub_questions": sub_questions,
        }
    )


class TestParseDecomposition:
    """The model's JSON is validated before a funnel is built from it."""

    def test_valid_response(self) -> None:
        text = _response(
            [
                {"step": 1, "question": "List diabetic ulcer wounds", "depends_on": None},
                {"step": 2, "question": "For each wound in Step 1, get the dressing", "depends_on": 1},
                {"step": 3, "question": "Average healing days by dressing", "depends_on": [1, 2]},
            ],
            template="Healing Rate Comparison",
        )
        decomposition = parse_decomposition_response(text, QUESTION)

        assert decomposition.matched_template == "Healing Rate Comparison"
        assert [s.depends_on for s in decomposition.sub_questions] == [[], [1], [1, 2]]

    def test_none_template_normalized(self) -> None:
        text = _response([{"step": 1, "question": "Count wounds", "depends_on": None}])

        assert parse_decomposition_response(text, QUESTION).matched_template is None

    def test_fenced_response(self) -> None:
        text = "```json\n" + _response([{"step": 1, "question": "Count wounds"}]) + "\n```"

        assert len(parse_decomposition_response(text, QUESTION).sub_questions) == 1

    def test_steps_sorted(self) -> None:
        text = _response(
            [
                {"step": 2, "question": "Second", "depends_on": 1},
                {"step": 1, "question": "First"},
            ]
        )
        steps = parse_decomposition_response(text, QUESTION).sub_questions

        assert [s.step for s in steps] == [1, 2]

    def test_missing_original_question_defaults(self) -> None:
        text = json.dumps({"sub_questions": [{"step": 1, "question": "Count wounds"}]})

        assert parse_decomposition_response(text, QUESTION).original_question == QUESTION

    @pytest.mark.parametrize(
        "text",
        [
            "I cannot help with that",
            json.dumps({"sub_questions": []}),
            json.dumps({"sub_questions": [{"question": "no step number"}]}),
            _response([{"step": 1, "question": "a"}, {"step": 3, "question": "b"}]),
            _response([{"step": 1, "question": "a", "depends_on": 2}, {"step": 2, "question": "b"}]),
            _response([{"step": 1, "question": "a"}, {"step": 1, "question": "b"}]),
        ],
    )
    def test_invalid_responses_raise(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_decomposition_response(text, QUESTION)


class TestValidateSteps:
    def test_self_dependency_rejected(self) -> None:
        with pytest.raises(ValueError, match="later step"):
            validate_steps([DecomposedStep(step=1, question="a", depends_on=[1])])


class TestHeuristicDecomposition:
    """Fallback splitting on conjunctions."""

    def test_splits_on_then(self) -> None:
        decomposition = heuristic_decomposition(
            "Show wound counts per clinic and then compare healing rates across treatments"
        )
        steps = decomposition.sub_questions

        assert [s.question for s in steps] == [
            "Show wound counts per clinic",
            "Compare healing rates across treatments",
        ]
        assert steps[1].depends_on == [1]

    def test_short_fragments_stay_together(self) -> None:
        """A conjunction joining two short terms is not a separate ask."""
        decomposition = heuristic_decomposition("Show patients with diabetes and hypertension")

        assert [s.question for s in decomposition.sub_questions] == [
            "Show patients with diabetes and hypertension"
        ]

    def test_semicolons(self) -> None:
        decomposition = heuristic_decomposition(
            "count open wounds per unit; list the oldest assessments per unit?"
        )

        assert len(decomposition.sub_questions) == 2
        assert decomposition.sub_questions[0].question == "Count open wounds per unit"


class TestBuildPrompt:
    def test_includes_question_and_schema(self) -> None:
        prompt = build_decomposition_prompt(QUESTION, "rpt.Wound(id, type)")

        assert QUESTION in prompt
        assert "rpt.Wound(id, type)" in prompt
        assert '"sub_questions"' in prompt
