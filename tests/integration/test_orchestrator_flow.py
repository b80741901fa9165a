"""Integration tests for the insight core wired end to end.

Uses the bundled template catalog and semantic model, the real
``ModelSqlGenerator`` and every core component built by
``create_insight_services``. Only the model endpoint and the database
are replaced: a scripted router answers each prompt kind and a fake
executor returns canned rows.
"""

from __future__ import annotations

import json

import pytest
from config.settings import Settings
from entities.funnel import InMemoryFunnelRepository
from entities.query_builder import ModelSqlGenerator
from entities.workflow import CoreClients, InsightServices, create_insight_services
from entities.workflow.clients import JsonTemplateCatalog, KeywordMetadataProvider
from models import (
    DirectOutcome,
    FunnelOutcome,
    SubQuestionStatus,
    TemplateOutcome,
)

from tests.conftest import FakeModelRouter, FakeSqlExecutor, SpyAuditSink

COMPLEX_QUESTION = "Compare healing rates then show the trend over time for each clinic"

DECOMPOSITION = json.dumps(
    {
        "original_question": COMPLEX_QUESTION,
        "matched_template": "Healing Rate Comparison",
        "sub_questions": [
            {"step": 1, "question": "Healing rates per clinic", "depends_on": []},
            {
                "step": 2,
                "question": "For each clinic in Step 1, show the healing trend over time",
                "depends_on": [1],
            },
        ],
    }
)


class ScriptedModelRouter(FakeModelRouter):
    """Answers by prompt kind instead of by call order."""

    def __init__(self, classification: str, generations: list[str]) -> None:
        super().__init__(model_id="test-model")
        self.classification = classification
        self.generations = generations

    async def complete(self, system, user_message, *, model_id=None, max_tokens=1000, temperature=0.1):
        self.calls.append({"system": system, "user_message": user_message, "model_id": model_id})
        if system.startswith("You are an intent classifier"):
            return self.classification
        if system.startswith("You are a clinical data analyst"):
            return DECOMPOSITION
        response = self.generations.pop(0) if len(self.generations) > 1 else self.generations[0]
        return response

    def generation_calls(self) -> list[dict]:
        return [c for c in self.calls if c["system"].startswith("You are a SQL Server expert")]


def _services(
    settings: Settings, router: ScriptedModelRouter, sink: SpyAuditSink
) -> InsightServices:
    clients = CoreClients(
        model_router=router,
        template_catalog=JsonTemplateCatalog.from_path(),
        metadata_provider=KeywordMetadataProvider.from_path(),
        sql_generator=ModelSqlGenerator.from_settings(settings, router),
        sql_executor=FakeSqlExecutor(
            rows=[{"clinic": "North", "healed": 4}, {"clinic": "South", "healed": 7}],
            columns=["clinic", "healed"],
        ),
        audit_sink=sink,
        funnel_repository=InMemoryFunnelRepository(),
    )
    return create_insight_services(settings, clients)


@pytest.fixture
def sink() -> SpyAuditSink:
    return SpyAuditSink()


class TestTemplateFlow:
    """Bundled catalog question answered without the model."""

    async def test_status_question_uses_bundled_template(
        self, test_settings: Settings, sink: SpyAuditSink
    ) -> None:
        router = ScriptedModelRouter("{}", ["{}"])
        services = _services(test_settings, router, sink)

        result = await services.orchestrator.ask("Show assessments by status", "c1")
        await services.audit.drain()

        assert isinstance(result, TemplateOutcome)
        assert result.template.template.id == "assessments-by-status"
        assert "rpt.Assessment" in result.sql
        assert router.calls == []
        assert "orchestration" in sink.names()


class TestDirectFlow:
    """Classification, keyword discovery and model generation."""

    async def test_direct_question_generates_qualified_sql(
        self, test_settings: Settings, sink: SpyAuditSink
    ) -> None:
        router = ScriptedModelRouter(
            json.dumps({"intent": "latest_per_entity", "confidence": 0.9}),
            [
                json.dumps(
                    {
                        "sql": "SELECT TOP 50 id, created_at FROM Wound "
                        "WHERE wound_type = 'diabetic' ORDER BY created_at DESC",
                        "explanation": "Most recent diabetic wounds",
                    }
                )
            ],
        )
        services = _services(test_settings, router, sink)

        result = await services.orchestrator.ask("List recent diabetic wounds", "c1")

        assert isinstance(result, DirectOutcome)
        assert "FROM rpt.Wound" in result.sql
        assert result.context.forms == ["rpt.Wound"]
        assert result.explanation == "Most recent diabetic wounds"
        [generation] = router.generation_calls()
        assert "List recent diabetic wounds" in generation["user_message"]


class TestFunnelFlow:
    """Decompose, generate step SQL, execute and move to the next step."""

    async def test_complex_question_runs_step_by_step(
        self, test_settings: Settings, sink: SpyAuditSink
    ) -> None:
        router = ScriptedModelRouter(
            json.dumps({"intent": "time_series_trend", "confidence": 0.9}),
            [
                json.dumps({"sql": "SELECT TOP 100 id, healed_at FROM Wound"}),
                json.dumps({"sql": "SELECT TOP 100 id, created_at, healed_at FROM Wound"}),
            ],
        )
        services = _services(test_settings, router, sink)

        result = await services.orchestrator.ask(COMPLEX_QUESTION, "c1")

        assert isinstance(result, FunnelOutcome)
        first, second = result.funnel.sub_questions
        assert result.next_sub_question.id == first.id
        assert second.depends_on == [first.order]
        assert result.funnel.matched_template == "Healing Rate Comparison"

        generated = await services.funnel_engine.generate_sub_question_sql(first.id, "c1")
        assert generated.sql_query == "SELECT TOP 100 id, healed_at FROM rpt.Wound"

        executed = await services.orchestrator.execute_sub_question(first.id)
        assert isinstance(executed, FunnelOutcome)
        assert executed.next_sub_question.id == second.id

        stored = await services.funnel_engine.get_sub_question(first.id)
        assert stored.status == SubQuestionStatus.COMPLETED
        assert stored.result.row_count == 2
        assert not services.funnel_engine.is_result_stale(stored)

        await services.funnel_engine.generate_sub_question_sql(second.id, "c1")
        last_generation = router.generation_calls()[-1]
        assert "## Previous Step SQL" in last_generation["user_message"]
        assert "SELECT TOP 100 id, healed_at FROM rpt.Wound" in last_generation["user_message"]

        await services.audit.drain()
        assert {"funnel_decomposed", "sub_question_executed", "orchestration"} <= set(
            sink.names()
        )

    async def test_same_question_reuses_active_funnel(
        self, test_settings: Settings, sink: SpyAuditSink
    ) -> None:
        router = ScriptedModelRouter(
            json.dumps({"intent": "time_series_trend", "confidence": 0.9}), ["{}"]
        )
        services = _services(test_settings, router, sink)

        first = await services.orchestrator.ask(COMPLEX_QUESTION, "c1")
        second = await services.orchestrator.ask(COMPLEX_QUESTION, "c1")

        assert second.funnel.id == first.funnel.id
        assert len(await services.funnel_engine.list_funnels("c1")) == 1
