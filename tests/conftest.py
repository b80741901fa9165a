"""Shared test fixtures for the insight core."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure src/backend/ is on the path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src" / "backend"))

from config.settings import Settings
from entities.shared.audit import AuditDispatcher
from entities.shared.protocols import NoOpReporter
from models import ClassificationResult, GeneratedSql, QueryTemplate, SemanticContext

# ---------------------------------------------------------------------------
# Protocol fakes
# ---------------------------------------------------------------------------


class FakeModelRouter:
    """In-memory fake satisfying the ``ModelRouter`` protocol.

    Replays canned responses in order (the last one repeats) and records
    every ``complete`` call. A response that is an exception is raised.
    """

    def __init__(self, responses: list[Any] | Any = None, model_id: str = "test-model") -> None:
        if responses is None:
            responses = []
        self.responses: list[Any] = responses if isinstance(responses, list) else [responses]
        self.model_id = model_id
        self.calls: list[dict[str, Any]] = []
        self.select_calls: list[str] = []

    async def select_model(self, question: str, scope_id: str) -> str:
        self.select_calls.append(question)
        return self.model_id

    async def complete(
        self,
        system: str,
        user_message: str,
        *,
        model_id: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> str:
        self.calls.append(
            {
                "system": system,
                "user_message": user_message,
                "model_id": model_id,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if not self.responses:
            raise RuntimeError("No canned model response")
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeTemplateCatalog:
    """In-memory fake satisfying the ``TemplateCatalog`` protocol."""

    def __init__(self, templates: list[QueryTemplate] | None = None) -> None:
        self.templates: list[QueryTemplate] = templates or []
        self.calls: list[str] = []

    async def list_templates(self, scope_id: str) -> list[QueryTemplate]:
        self.calls.append(scope_id)
        return list(self.templates)


class FakeMetadataProvider:
    """In-memory fake satisfying the ``SemanticMetadataProvider`` protocol.

    Returns a copy of *base* with the question and intent filled in.
    """

    def __init__(self, base: SemanticContext | None = None) -> None:
        self.base = base or SemanticContext(forms=["rpt.Assessment"], confidence=0.9)
        self.calls: list[tuple[str, str, ClassificationResult]] = []

    async def discover_context(
        self, question: str, scope_id: str, classification: ClassificationResult
    ) -> SemanticContext:
        self.calls.append((question, scope_id, classification))
        return self.base.model_copy(
            deep=True, update={"question": question, "intent": classification.intent}
        )


class FakeSqlGenerator:
    """In-memory fake satisfying the ``SqlGenerator`` protocol.

    Replays canned ``GeneratedSql`` results (the last one repeats) and
    records every call's keyword arguments.
    """

    def __init__(self, results: list[Any] | Any = None) -> None:
        if results is None:
            results = [GeneratedSql(sql="SELECT TOP 10 id FROM rpt.Assessment")]
        self.results: list[Any] = results if isinstance(results, list) else [results]
        self.calls: list[dict[str, Any]] = []

    async def generate(
        self,
        context: SemanticContext,
        scope_id: str,
        *,
        model_id: str | None = None,
        clarifications: dict[str, str] | None = None,
        prior_sql: str | None = None,
    ) -> GeneratedSql:
        self.calls.append(
            {
                "context": context,
                "scope_id": scope_id,
                "model_id": model_id,
                "clarifications": clarifications,
                "prior_sql": prior_sql,
            }
        )
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeSqlExecutor:
    """In-memory fake satisfying the ``SqlExecutor`` protocol.

    Returns canned rows/columns or an error, and records every call.
    """

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        columns: list[str] | None = None,
        error: str | None = None,
    ) -> None:
        self.rows: list[dict[str, Any]] = rows or []
        self.columns: list[str] = columns or []
        self.error: str | None = error
        self.calls: list[tuple[str, int | None]] = []

    async def execute(self, sql: str, timeout_seconds: int | None = None) -> dict[str, Any]:
        """Return a success/failure dict mimicking ``execute_sql`` output."""
        self.calls.append((sql, timeout_seconds))

        if self.error:
            return {
                "success": False,
                "error": self.error,
                "columns": [],
                "rows": [],
                "row_count": 0,
            }

        return {
            "success": True,
            "columns": self.columns,
            "rows": self.rows,
            "row_count": len(self.rows),
        }


class SpyAuditSink:
    """Spy satisfying the ``AuditSink`` protocol."""

    def __init__(self, fail: bool = False) -> None:
        self.events: list[dict[str, Any]] = []
        self.fail = fail

    async def record(self, event: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.events.append(event)

    def names(self) -> list[str]:
        return [event["event"] for event in self.events]


class SpyReporter:
    """Spy satisfying the ``ProgressReporter`` protocol.

    Captures every ``step_start`` / ``step_end`` call for assertions.
    """

    def __init__(self) -> None:
        self.events: list[dict[str, str]] = []

    def step_start(self, step: str) -> None:
        """Record a step-start event."""
        self.events.append({"step": step, "status": "started"})

    def step_end(self, step: str) -> None:
        """Record a step-end event."""
        self.events.append({"step": step, "status": "completed"})


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Return a ``Settings`` instance populated with safe test defaults."""
    return Settings(
        azure_ai_project_endpoint="https://test.cognitiveservices.azure.com",
        azure_sql_server="test-server.database.windows.net",
        azure_sql_database="TestDB",
        azure_ai_model_deployment_name="test-model",
        allow_anonymous=True,
    )


@pytest.fixture
def audit_sink() -> SpyAuditSink:
    return SpyAuditSink()


@pytest.fixture
def audit(audit_sink: SpyAuditSink) -> AuditDispatcher:
    """Return an ``AuditDispatcher`` that records into ``audit_sink``."""
    return AuditDispatcher(audit_sink)


@pytest.fixture
def fake_sql_executor() -> FakeSqlExecutor:
    """Return an empty ``FakeSqlExecutor`` instance."""
    return FakeSqlExecutor()


@pytest.fixture
def spy_reporter() -> SpyReporter:
    """Return a fresh ``SpyReporter`` instance."""
    return SpyReporter()


@pytest.fixture
def noop_reporter() -> NoOpReporter:
    """Return a ``NoOpReporter`` from the protocols module."""
    return NoOpReporter()
