"""Unit tests for the production Protocol adapters.

Covers the bundled catalog loaders, ``KeywordMetadataProvider``
discovery, the SQL executor's failure contract and the read-only query
guard of ``AzureSqlClient``. Nothing here touches the network.
"""

from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest
from entities.workflow.clients import (
    DEFAULT_SEMANTIC_MODEL_PATH,
    AgentFrameworkModelRouter,
    JsonTemplateCatalog,
    KeywordMetadataProvider,
    LoggingAuditSink,
    SqlExecutorAdapter,
    _response_text,
    load_json_file,
    load_templates,
)
from models import ClassificationResult, QueryIntent

SEMANTIC_MODEL = {
    "forms": [
        {
            "name": "rpt.Wound",
            "terms": ["wound"],
            "fields": [
                {
                    "name": "wound_type",
                    "semantic": "wound_type",
                    "terms": ["type"],
                    "values": ["diabetic", "pressure"],
                }
            ],
        },
        {
            "name": "rpt.Assessment",
            "terms": ["assessment"],
            "fields": [
                {"name": "assessment_type", "semantic": "assessment_type", "terms": ["type"]}
            ],
        },
    ],
    "join_paths": [
        {"left": "rpt.Wound", "right": "rpt.Assessment", "condition": "Wound.id = Assessment.wound_id"}
    ],
}

CLASSIFICATION = ClassificationResult(
    intent=QueryIntent.AGGREGATION_BY_CATEGORY, confidence=0.9, method="ai"
)


# ── Loaders ─────────────────────────────────────────────────────────────


class TestLoaders:
    """Bundled JSON config files."""

    def test_bundled_templates_load(self) -> None:
        templates = load_templates()

        assert len(templates) >= 3
        assert {t.status for t in templates} >= {"approved", "draft"}

    def test_invalid_template_is_skipped(self, tmp_path: Path) -> None:
        path = tmp_path / "templates.json"
        path.write_text(
            json.dumps(
                [
                    {"id": "ok", "name": "Ok", "sql_template": "SELECT TOP 1 id FROM rpt.Wound"},
                    {"id": "broken", "name": "No SQL"},
                ]
            ),
            encoding="utf-8",
        )

        assert [t.id for t in load_templates(path)] == ["ok"]

    def test_templates_must_be_an_array(self, tmp_path: Path) -> None:
        path = tmp_path / "templates.json"
        path.write_text("{}", encoding="utf-8")

        with pytest.raises(TypeError):
            load_templates(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_json_file(tmp_path / "nope.json")

    def test_malformed_file(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ValueError, match="Malformed broken.json"):
            load_json_file(path)

    async def test_catalog_returns_copies(self) -> None:
        catalog = JsonTemplateCatalog.from_path()

        first = await catalog.list_templates("c1")
        first[0].keywords.append("mutated")
        second = await catalog.list_templates("c1")

        assert "mutated" not in second[0].keywords


# ── Metadata discovery ──────────────────────────────────────────────────


class TestKeywordMetadataProvider:
    """Forms, fields, terminology, joins and time ranges from keywords."""

    async def test_value_binding_and_time_range(self) -> None:
        provider = KeywordMetadataProvider(SEMANTIC_MODEL)

        context = await provider.discover_context(
            "Diabetic wounds in the last 3 months", "c1", CLASSIFICATION
        )

        assert context.forms == ["rpt.Wound"]
        assert context.fields == ["rpt.Wound.wound_type"]
        assert context.intent == QueryIntent.AGGREGATION_BY_CATEGORY
        assert context.terminology[0].term == "diabetic"
        assert context.terminology[0].candidates[0].value == "diabetic"
        assert context.terminology[0].semantic == "wound_type"
        assert context.time_range.unit == "month"
        assert context.time_range.value == 3
        assert context.join_paths == []
        assert context.confidence == 0.8

    async def test_shared_term_is_ambiguous(self) -> None:
        provider = KeywordMetadataProvider(SEMANTIC_MODEL)

        context = await provider.discover_context("Wound count by type", "c1", CLASSIFICATION)

        [term] = context.ambiguous_terms()
        assert term.term == "type"
        assert [(c.form, c.field) for c in term.candidates] == [
            ("rpt.Wound", "wound_type"),
            ("rpt.Assessment", "assessment_type"),
        ]
        assert term.semantic == ""
        assert context.forms == ["rpt.Wound", "rpt.Assessment"]
        assert len(context.join_paths) == 1

    async def test_nothing_found(self) -> None:
        provider = KeywordMetadataProvider(SEMANTIC_MODEL)

        context = await provider.discover_context("Hello there", "c1", CLASSIFICATION)

        assert context.forms == []
        assert context.terminology == []
        assert context.confidence == 0.3

    async def test_bundled_semantic_model(self) -> None:
        provider = KeywordMetadataProvider.from_path(DEFAULT_SEMANTIC_MODEL_PATH)

        context = await provider.discover_context(
            "Average wound area per patient", "c1", CLASSIFICATION
        )

        assert {"rpt.Wound", "rpt.Patient", "rpt.Measurement"} <= set(context.forms)


# ── Execution ───────────────────────────────────────────────────────────


@pytest.fixture
def azure_sql_client() -> type:
    """``AzureSqlClient``, skipped where the ODBC driver stack is unavailable."""
    pytest.importorskip("aioodbc")
    from entities.shared.clients import AzureSqlClient

    return AzureSqlClient


class TestSqlExecutorAdapter:
    """Failures come back as result dicts, never exceptions."""

    async def test_missing_server_is_reported(self) -> None:
        pytest.importorskip("aioodbc")
        executor = SqlExecutorAdapter("", "InsightGen")

        result = await executor.execute("SELECT TOP 1 id FROM rpt.Wound")

        assert result["success"] is False
        assert "AZURE_SQL_SERVER" in result["error"]
        assert result["rows"] == []
        assert result["row_count"] == 0


class TestAzureSqlClientGuard:
    """Read-only statement guard."""

    @pytest.mark.parametrize(
        "sql",
        [
            "SELECT TOP 10 id FROM rpt.Wound",
            "WITH w AS (SELECT id FROM rpt.Wound) SELECT id FROM w",
            "SELECT updated_at FROM rpt.Wound",
        ],
    )
    def test_allows_reads(self, azure_sql_client: type, sql: str) -> None:
        assert azure_sql_client("server", "db").validate_query(sql) == (True, None)

    @pytest.mark.parametrize(
        "sql",
        [
            "DELETE FROM rpt.Wound",
            "SELECT id FROM rpt.Wound; DROP TABLE rpt.Wound",
            "SELECT id INTO #tmp FROM rpt.Wound; EXEC sp_who",
        ],
    )
    def test_rejects_writes(self, azure_sql_client: type, sql: str) -> None:
        is_valid, error = azure_sql_client("server", "db").validate_query(sql)

        assert is_valid is False
        assert error

    async def test_execute_without_connection(self, azure_sql_client: type) -> None:
        result = await azure_sql_client("server", "db").execute_query("SELECT TOP 1 id FROM rpt.Wound")

        assert result["success"] is False
        assert "async with" in result["error"]


# ── Model router and audit sink ─────────────────────────────────────────


class TestAgentFrameworkModelRouter:
    """Construction and response text extraction."""

    def test_requires_project_endpoint(self) -> None:
        with pytest.raises(ValueError, match="AZURE_AI_PROJECT_ENDPOINT"):
            AgentFrameworkModelRouter("", credential=None, default_model="gpt-4o")

    def test_response_text_from_messages(self) -> None:
        response = SimpleNamespace(
            messages=[SimpleNamespace(contents=[SimpleNamespace(text='{"intent": "top_k"}')])]
        )

        assert _response_text(response) == '{"intent": "top_k"}'

    def test_response_text_fallback(self) -> None:
        assert _response_text(SimpleNamespace(messages=[], text="plain")) == "plain"

    async def test_select_model_uses_classifier_model(self) -> None:
        router = AgentFrameworkModelRouter(
            "https://example.services.ai.azure.com/api/projects/p",
            credential=None,
            default_model="gpt-4o",
            classifier_model="gpt-4o-mini",
        )

        assert await router.select_model("q", "c1") == "gpt-4o-mini"


class TestLoggingAuditSink:
    """Audit events go to the log."""

    async def test_record_logs_event(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("INFO", logger="entities.workflow.clients"):
            await LoggingAuditSink().record({"event": "classification", "intent": "top_k"})

        assert "Audit event classification" in caplog.text
