"""Unit tests for ThreeModeOrchestrator.

Every collaborator is an in-memory fake, so each test drives one routing
decision: template, direct, funnel, clarification or error.
"""

from __future__ import annotations

import json

import pytest
from entities.funnel import FunnelEngine, InMemoryFunnelRepository
from entities.intent_classifier import IntentClassifier
from entities.orchestrator import ThreeModeOrchestrator
from entities.shared.audit import AuditDispatcher
from entities.shared.errors import GenerationError, QuestionValidationError
from entities.template_matcher import TemplateMatcher
from models import (
    ClarificationOutcome,
    DirectOutcome,
    ErrorOutcome,
    FieldBinding,
    FunnelOutcome,
    GeneratedSql,
    QueryTemplate,
    SemanticContext,
    SubQuestionStatus,
    TemplateOutcome,
    TemplatePlaceholder,
    TermBinding,
)

from tests.conftest import (
    FakeMetadataProvider,
    FakeModelRouter,
    FakeSqlExecutor,
    FakeSqlGenerator,
    FakeTemplateCatalog,
    SpyAuditSink,
    SpyReporter,
)

TEMPLATE_QUESTION = "Count assessments by status"
DIRECT_QUESTION = "List recent wounds for clinic A"
COMPLEX_QUESTION = "Compare healing rates then show the trend over time for each clinic"

LATEST_PER_ENTITY = json.dumps({"intent": "latest_per_entity", "confidence": 0.9})
TIME_SERIES = json.dumps({"intent": "time_series_trend", "confidence": 0.9})


def _status_template(**overrides) -> QueryTemplate:
    fields = {
        "id": "tpl-status",
        "name": "Assessments by status",
        "intent": "aggregation_by_category",
        "description": "Counts assessments per workflow status.",
        "sql_template": "SELECT status, COUNT(*) AS n FROM rpt.Assessment GROUP BY status",
        "keywords": ["assessments", "status"],
        "question_examples": [TEMPLATE_QUESTION],
    }
    fields.update(overrides)
    return QueryTemplate(**fields)


class _FailingMetadataProvider:
    async def discover_context(self, question, scope_id, classification):
        raise RuntimeError("metadata index offline")


def _orchestrator(
    audit: AuditDispatcher,
    *,
    router: FakeModelRouter | None = None,
    templates: list[QueryTemplate] | None = None,
    metadata=None,
    generator: FakeSqlGenerator | None = None,
    executor: FakeSqlExecutor | None = None,
) -> ThreeModeOrchestrator:
    router = router or FakeModelRouter(LATEST_PER_ENTITY)
    return ThreeModeOrchestrator(
        IntentClassifier(router, audit),
        TemplateMatcher(FakeTemplateCatalog(templates)),
        metadata or FakeMetadataProvider(),
        generator or FakeSqlGenerator(),
        FunnelEngine(InMemoryFunnelRepository(), audit, sql_executor=executor),
        audit,
    )


# ── Template mode ─────────────────────────────────────────────────────


class TestTemplateMode:
    """Matched templates are bound, validated and capped."""

    async def test_applies_matching_template(
        self, audit: AuditDispatcher, audit_sink: SpyAuditSink
    ) -> None:
        router = FakeModelRouter(LATEST_PER_ENTITY)
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(
            audit, router=router, templates=[_status_template()], generator=generator
        )

        result = await orchestrator.ask(TEMPLATE_QUESTION, "c1")
        await audit.drain()

        assert isinstance(result, TemplateOutcome)
        assert result.sql == (
            "SELECT TOP 1000 status, COUNT(*) AS n FROM rpt.Assessment GROUP BY status"
        )
        assert result.template.template.id == "tpl-status"
        assert result.validation.is_valid
        assert generator.calls == []
        assert router.calls == []
        assert "orchestration" in audit_sink.names()

    async def test_unbound_placeholder_asks_for_value(self, audit: AuditDispatcher) -> None:
        template = _status_template(
            sql_template="SELECT TOP 100 id FROM rpt.Assessment WHERE status = {{status}}",
            placeholders=[
                TemplatePlaceholder(name="status", semantic="status", options=["draft", "submitted"])
            ],
        )
        orchestrator = _orchestrator(audit, templates=[template])

        result = await orchestrator.ask(TEMPLATE_QUESTION, "c1")

        assert isinstance(result, ClarificationOutcome)
        assert [c.id for c in result.clarifications] == ["status"]
        assert [o.value for o in result.clarifications[0].options] == ["draft", "submitted"]

    async def test_answer_binds_placeholder(self, audit: AuditDispatcher) -> None:
        template = _status_template(
            sql_template="SELECT TOP 100 id FROM rpt.Assessment WHERE status = {{status}}",
            placeholders=[TemplatePlaceholder(name="status", semantic="status")],
        )
        orchestrator = _orchestrator(audit, templates=[template])

        result = await orchestrator.ask_with_clarifications(
            TEMPLATE_QUESTION, "c1", {"status": "draft"}
        )

        assert isinstance(result, TemplateOutcome)
        assert result.sql == "SELECT TOP 100 id FROM rpt.Assessment WHERE status = 'draft'"
        assert result.bindings == {"status": "draft"}

    async def test_answer_outside_options_is_not_bound(self, audit: AuditDispatcher) -> None:
        template = _status_template(
            sql_template="SELECT TOP 100 id FROM rpt.Assessment WHERE status = {{status}}",
            placeholders=[
                TemplatePlaceholder(name="status", semantic="status", options=["draft", "submitted"])
            ],
        )
        orchestrator = _orchestrator(audit, templates=[template])

        result = await orchestrator.ask_with_clarifications(
            TEMPLATE_QUESTION, "c1", {"status": "LOWER(status) OR 1=1"}
        )

        assert isinstance(result, ClarificationOutcome)
        assert [c.id for c in result.clarifications] == ["status"]

    async def test_free_text_answer_is_quoted(self, audit: AuditDispatcher) -> None:
        template = _status_template(
            sql_template="SELECT TOP 100 id FROM rpt.Assessment WHERE status = {{status}}",
            placeholders=[TemplatePlaceholder(name="status", semantic="status")],
        )
        orchestrator = _orchestrator(audit, templates=[template])

        result = await orchestrator.ask_with_clarifications(
            TEMPLATE_QUESTION, "c1", {"status": "LOWER(status) OR 1=1"}
        )

        assert isinstance(result, TemplateOutcome)
        assert result.sql == (
            "SELECT TOP 100 id FROM rpt.Assessment WHERE status = 'LOWER(status) OR 1=1'"
        )

    async def test_invalid_template_falls_through_to_direct(self, audit: AuditDispatcher) -> None:
        broken = _status_template(sql_template="SELECT status, COUNT(*) AS n FROM rpt.Assessment")
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(audit, templates=[broken], generator=generator)

        result = await orchestrator.ask(TEMPLATE_QUESTION, "c1")

        assert isinstance(result, DirectOutcome)
        assert len(generator.calls) == 1
        assert any(step.id == "template_apply" and step.status == "error" for step in result.thinking)

    async def test_weak_template_is_only_suggested(self, audit: AuditDispatcher) -> None:
        orchestrator = _orchestrator(audit, templates=[_status_template()])

        result = await orchestrator.ask("status of all assessments", "c1")

        assert isinstance(result, DirectOutcome)
        assert [s.template.id for s in result.template_suggestions] == ["tpl-status"]


# ── Direct mode ───────────────────────────────────────────────────────


class TestDirectMode:
    """Context discovery followed by generation and validation."""

    async def test_direct_generation(
        self, audit: AuditDispatcher, spy_reporter: SpyReporter
    ) -> None:
        metadata = FakeMetadataProvider()
        orchestrator = _orchestrator(audit, metadata=metadata)

        result = await orchestrator.ask(DIRECT_QUESTION, "c1", reporter=spy_reporter)

        assert isinstance(result, DirectOutcome)
        assert result.sql == "SELECT TOP 10 id FROM rpt.Assessment"
        assert result.context.question == DIRECT_QUESTION
        assert result.complexity.level == "simple"
        assert [step.id for step in result.thinking] == [
            "classify",
            "template_match",
            "complexity_check",
            "context_discovery",
            "sql_generation",
        ]
        assert all(step.status == "complete" for step in result.thinking)
        assert len(metadata.calls) == 1
        assert len(spy_reporter.events) == 10
        assert spy_reporter.events[0] == {"step": "Understanding intent", "status": "started"}

    async def test_unbounded_sql_is_capped(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator(GeneratedSql(sql="SELECT id FROM rpt.Wound"))
        orchestrator = _orchestrator(audit, generator=generator)

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert result.sql == "SELECT TOP 1000 id FROM rpt.Wound"

    async def test_model_override_reaches_generator(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(audit, generator=generator)

        await orchestrator.ask(DIRECT_QUESTION, "c1", model_id="gpt-4o-mini")

        assert generator.calls[0]["model_id"] == "gpt-4o-mini"

    async def test_metadata_failure_uses_fallback_context(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(
            audit, metadata=_FailingMetadataProvider(), generator=generator
        )

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert isinstance(result, DirectOutcome)
        assert generator.calls[0]["context"].question == DIRECT_QUESTION
        assert generator.calls[0]["context"].forms == []

    async def test_ambiguous_term_asks_which_field(self, audit: AuditDispatcher) -> None:
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
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(
            audit, metadata=FakeMetadataProvider(context), generator=generator
        )

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert isinstance(result, ClarificationOutcome)
        assert result.clarifications[0].id == "type"
        assert [o.value for o in result.clarifications[0].options] == [
            "Wound.wound_type",
            "Assessment.assessment_type",
        ]
        assert result.partial_context is not None
        assert generator.calls == []

    async def test_answered_term_resumes_generation(self, audit: AuditDispatcher) -> None:
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
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(
            audit, metadata=FakeMetadataProvider(context), generator=generator
        )

        result = await orchestrator.ask_with_clarifications(
            DIRECT_QUESTION, "c1", {"type": "Wound.wound_type"}
        )

        assert isinstance(result, DirectOutcome)
        assert generator.calls[0]["clarifications"] == {"type": "Wound.wound_type"}
        candidates = result.context.terminology[0].candidates
        assert [(c.form, c.field) for c in candidates] == [("Wound", "wound_type")]

    async def test_generator_clarification_is_returned(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator(
            GeneratedSql(needs_clarification=True, reasoning="Which clinic do you mean?")
        )
        orchestrator = _orchestrator(audit, generator=generator)

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert isinstance(result, ClarificationOutcome)
        assert result.reasoning == "Which clinic do you mean?"

    async def test_recoverable_generation_error_asks_user(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator(GenerationError("Need a date range", recoverable=True))
        orchestrator = _orchestrator(audit, generator=generator)

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert isinstance(result, ClarificationOutcome)
        assert result.reasoning == "Need a date range"

    async def test_unrecoverable_generation_error(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator(GenerationError("Model refused"))
        orchestrator = _orchestrator(audit, generator=generator)

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert isinstance(result, ErrorOutcome)
        assert result.error_type == "generation_failure"
        assert result.thinking[-1].status == "error"

    async def test_repeated_invalid_sql_falls_back_to_funnel(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator(
            GeneratedSql(sql="SELECT status, COUNT(*) AS n FROM rpt.Assessment")
        )
        orchestrator = _orchestrator(audit, generator=generator)

        result = await orchestrator.ask(DIRECT_QUESTION, "c1")

        assert isinstance(result, FunnelOutcome)
        assert len(generator.calls) == 2
        assert result.next_sub_question is not None
        assert result.next_sub_question.order == 1


# ── Funnel mode and gating ────────────────────────────────────────────


class TestRouting:
    """Actionability gate, complexity routing and input checks."""

    async def test_low_confidence_asks_for_intent(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(
            audit, router=FakeModelRouter("not json"), generator=generator
        )

        result = await orchestrator.ask("hello there", "c1")

        assert isinstance(result, ClarificationOutcome)
        assert result.clarifications[0].id == "intent"
        assert result.classification.method == "fallback"
        assert generator.calls == []

    async def test_intent_answer_skips_actionability_gate(self, audit: AuditDispatcher) -> None:
        orchestrator = _orchestrator(audit, router=FakeModelRouter("not json"))

        result = await orchestrator.ask_with_clarifications(
            "hello there", "c1", {"intent": "top_k"}
        )

        assert isinstance(result, DirectOutcome)
        assert result.classification.intent.value == "top_k"
        assert result.classification.confidence == 1.0

    async def test_complex_question_is_decomposed(self, audit: AuditDispatcher) -> None:
        generator = FakeSqlGenerator()
        orchestrator = _orchestrator(
            audit, router=FakeModelRouter(TIME_SERIES), generator=generator
        )

        result = await orchestrator.ask(COMPLEX_QUESTION, "c1")

        assert isinstance(result, FunnelOutcome)
        assert result.complexity.level == "complex"
        assert result.funnel.original_question == COMPLEX_QUESTION
        assert result.next_sub_question.status == SubQuestionStatus.PENDING
        assert generator.calls == []

    @pytest.mark.parametrize(("question", "scope_id"), [("", "c1"), ("   ", "c1"), ("q", "")])
    async def test_blank_input_rejected(
        self, audit: AuditDispatcher, question: str, scope_id: str
    ) -> None:
        orchestrator = _orchestrator(audit)

        with pytest.raises(QuestionValidationError):
            await orchestrator.ask(question, scope_id)


# ── Sub-question execution ────────────────────────────────────────────


class TestExecuteSubQuestion:
    """Funnel step execution through the orchestrator."""

    async def _funnel_with_steps(self, orchestrator: ThreeModeOrchestrator):
        engine = orchestrator._funnel_engine
        funnel = await engine.create_funnel("c1", COMPLEX_QUESTION)
        first = await engine.add_sub_question(
            funnel.id, "Healing rate per clinic", sql_query="SELECT TOP 10 clinic FROM rpt.Wound"
        )
        second = await engine.add_sub_question(funnel.id, "Trend for each clinic")
        return first, second

    async def test_success_points_at_next_step(self, audit: AuditDispatcher) -> None:
        executor = FakeSqlExecutor(rows=[{"clinic": "A"}], columns=["clinic"])
        orchestrator = _orchestrator(audit, executor=executor)
        first, second = await self._funnel_with_steps(orchestrator)

        result = await orchestrator.execute_sub_question(first.id)

        assert isinstance(result, FunnelOutcome)
        assert result.next_sub_question.id == second.id
        assert result.funnel.sub_questions[0].result.row_count == 1

    async def test_database_error_becomes_error_outcome(self, audit: AuditDispatcher) -> None:
        executor = FakeSqlExecutor(error="Invalid column name 'clinic'")
        orchestrator = _orchestrator(audit, executor=executor)
        first, _ = await self._funnel_with_steps(orchestrator)

        result = await orchestrator.execute_sub_question(first.id)

        assert isinstance(result, ErrorOutcome)
        assert result.error_type == "missing_column"
        assert result.sql == "SELECT TOP 10 clinic FROM rpt.Wound"
