"""Protocol interfaces for I/O boundaries.

These protocols enable dependency injection for testability.
Production implementations wrap Azure clients; test fakes
return canned data with zero network or database access.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from models import (
    ClassificationResult,
    GeneratedSql,
    QueryFunnel,
    QueryTemplate,
    SemanticContext,
    SubQuestion,
)


@runtime_checkable
class ModelRouter(Protocol):
    """Selects a language model and issues single completion calls."""

    async def select_model(self, question: str, scope_id: str) -> str:
        """Pick the model id best suited to the question.

        Args:
            question: Natural-language question from the user.
            scope_id: Customer or data-scope identifier.

        Returns:
            Model deployment id.
        """
        ...

    async def complete(
        self,
        system: str,
        user_message: str,
        *,
        model_id: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.1,
    ) -> str:
        """Run one completion and return the raw response text.

        Args:
            system: System prompt.
            user_message: User turn content.
            model_id: Deployment to use (``None`` for the router default).
            max_tokens: Upper bound on response length.
            temperature: Sampling temperature.

        Returns:
            Model response text.
        """
        ...


@runtime_checkable
class SemanticMetadataProvider(Protocol):
    """Discovers forms, fields, terminology and join paths for a question."""

    async def discover_context(
        self,
        question: str,
        scope_id: str,
        classification: ClassificationResult,
    ) -> SemanticContext:
        """Build the semantic context for a question within a scope.

        Args:
            question: Natural-language question.
            scope_id: Customer or data-scope identifier.
            classification: Intent already assigned to the question.

        Returns:
            Discovered ``SemanticContext``.
        """
        ...


@runtime_checkable
class TemplateCatalog(Protocol):
    """Supplies published query templates."""

    async def list_templates(self, scope_id: str) -> list[QueryTemplate]:
        """Return every template visible to the scope, any status.

        Args:
            scope_id: Customer or data-scope identifier.

        Returns:
            Templates with usage history.
        """
        ...


@runtime_checkable
class SqlGenerator(Protocol):
    """Turns a semantic context into SQL, or asks for clarification."""

    async def generate(
        self,
        context: SemanticContext,
        scope_id: str,
        *,
        model_id: str | None = None,
        clarifications: dict[str, str] | None = None,
        prior_sql: str | None = None,
    ) -> GeneratedSql:
        """Generate SQL for a context.

        Args:
            context: Semantic context (question, intent, bindings).
            scope_id: Customer or data-scope identifier.
            model_id: Deployment override.
            clarifications: Answers to previously raised clarifications.
            prior_sql: SQL of an earlier step the new SQL may build on.

        Returns:
            ``GeneratedSql`` with either SQL or clarification questions.
        """
        ...


@runtime_checkable
class SqlExecutor(Protocol):
    """Executes read-only SQL against the reporting database.

    Returns a dict with keys: ``success``, ``columns``, ``rows``,
    ``row_count``, ``error``.
    """

    async def execute(self, sql: str, timeout_seconds: int | None = None) -> dict[str, Any]:
        """Execute a SQL query.

        Args:
            sql: Validated read-only SQL statement.
            timeout_seconds: Query timeout (``None`` for the executor default).

        Returns:
            Execution result dict with rows, columns, and status.
        """
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Receives classification, validation and lineage events."""

    async def record(self, event: dict[str, Any]) -> None:
        """Persist one audit event. May raise; callers never await it inline.

        Args:
            event: Event payload with at least an ``event`` key.
        """
        ...


@runtime_checkable
class FunnelRepository(Protocol):
    """Storage for funnels and their sub-questions."""

    async def save_funnel(self, funnel: QueryFunnel) -> None: ...

    async def get_funnel(self, funnel_id: str) -> QueryFunnel | None: ...

    async def list_funnels(self, scope_id: str | None = None) -> list[QueryFunnel]: ...

    async def delete_funnel(self, funnel_id: str) -> bool: ...

    async def find_sub_question(self, sub_question_id: str) -> SubQuestion | None: ...


@runtime_checkable
class ProgressReporter(Protocol):
    """Reports step-level progress for streaming UI updates."""

    def step_start(self, step: str) -> None:
        """Signal that a named step has started.

        Args:
            step: Human-readable step label.
        """
        ...

    def step_end(self, step: str) -> None:
        """Signal that a named step has completed.

        Args:
            step: Human-readable step label (must match a prior start).
        """
        ...


# ---------------------------------------------------------------------------
# Concrete implementations
# ---------------------------------------------------------------------------


class NoOpReporter:
    """ProgressReporter that silently discards all events.

    Useful in tests and non-streaming contexts where no UI is listening.
    """

    def step_start(self, step: str) -> None:
        """No-op."""

    def step_end(self, step: str) -> None:
        """No-op."""
