"""
Funnel decomposition engine.

Owns the lifecycle of query funnels: decomposing a compound question
into ordered sub-questions, CRUD over funnels and sub-questions, SQL
generation per sub-question and execution with result caching. Status
changes are explicit and follow ``state.ALLOWED_TRANSITIONS``; editing a
sub-question never resets its status, but a cached result whose SQL no
longer matches is reported as stale.
"""

import asyncio
import logging
import re
from typing import Any

from config.settings import Settings
from entities.funnel.prompts import (
    DECOMPOSITION_MAX_TOKENS,
    DECOMPOSITION_SYSTEM_PROMPT,
    DECOMPOSITION_TEMPERATURE,
    build_decomposition_prompt,
    heuristic_decomposition,
    parse_decomposition_response,
)
from entities.funnel.state import ensure_transition
from entities.intent_classifier.patterns import match_patterns
from entities.query_validator import SQLValidator, enforce_row_limit, fix_order_by_aliases
from entities.shared.audit import AuditDispatcher
from entities.shared.error_recovery import classify_error, is_recoverable, summarize_violations
from entities.shared.errors import (
    ExecutionError,
    FunnelNotFoundError,
    GenerationError,
    QuestionValidationError,
    SubQuestionNotFoundError,
)
from entities.shared.protocols import (
    FunnelRepository,
    ModelRouter,
    SemanticMetadataProvider,
    SqlExecutor,
    SqlGenerator,
)
from models import (
    ClassificationResult,
    DecomposedStep,
    Decomposition,
    FunnelStatus,
    QueryFunnel,
    QueryIntent,
    SubQuestion,
    SubQuestionResult,
    SubQuestionStatus,
)
from models.funnel import _now

logger = logging.getLogger(__name__)


def _normalize_sql(sql: str | None) -> str:
    return re.sub(r"\s+", " ", sql or "").strip().rstrip(";").strip()


def _sub_question_classification(text: str) -> ClassificationResult:
    """Pattern-only classification for a sub-question (no model call)."""
    matches = match_patterns(text)
    if matches:
        best = matches[0]
        return ClassificationResult(
            intent=best.intent,
            confidence=best.confidence,
            method="pattern",
            matched_patterns=list(best.matched_patterns),
        )
    return ClassificationResult(
        intent=QueryIntent.LEGACY_UNKNOWN,
        confidence=0.0,
        method="fallback",
        reasoning="Funnel sub-question",
    )


class FunnelEngine:
    """Stateful decomposition of compound questions.

    Storage goes through a ``FunnelRepository``; model, generator,
    metadata and executor collaborators are only needed by the
    operations that use them.

    Args:
        repository: Funnel storage.
        audit: Dispatcher for lineage events.
        model_router: Used by ``decompose``.
        sql_generator: Used by ``generate_sub_question_sql``.
        metadata_provider: Used by ``generate_sub_question_sql``.
        sql_executor: Used by ``execute_sub_question``.
        validator: Structural SQL validator.
        model_timeout_seconds: Bound on each model call.
        query_timeout_seconds: Timeout passed to the executor.
        row_limit: Row cap injected into unbounded SQL.
    """

    def __init__(
        self,
        repository: FunnelRepository,
        audit: AuditDispatcher,
        *,
        model_router: ModelRouter | None = None,
        sql_generator: SqlGenerator | None = None,
        metadata_provider: SemanticMetadataProvider | None = None,
        sql_executor: SqlExecutor | None = None,
        validator: SQLValidator | None = None,
        model_timeout_seconds: float = 60.0,
        query_timeout_seconds: int = 30,
        row_limit: int = 1000,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._model_router = model_router
        self._sql_generator = sql_generator
        self._metadata_provider = metadata_provider
        self._sql_executor = sql_executor
        self._validator = validator or SQLValidator()
        self._model_timeout_seconds = model_timeout_seconds
        self._query_timeout_seconds = query_timeout_seconds
        self._row_limit = row_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: FunnelRepository,
        audit: AuditDispatcher,
        **collaborators: Any,
    ) -> "FunnelEngine":
        """Build an engine with validator, timeouts and row cap taken from *settings*.

        *collaborators* are passed through as keyword arguments
        (``model_router``, ``sql_generator`` and so on).
        """
        return cls(
            repository,
            audit,
            validator=SQLValidator.from_settings(settings),
            model_timeout_seconds=settings.model_timeout_seconds,
            query_timeout_seconds=settings.query_timeout_seconds,
            row_limit=settings.default_row_limit,
            **collaborators,
        )

    # ── Funnels ─────────────────────────────────────────────────────────

    async def create_funnel(
        self, scope_id: str, original_question: str, matched_template: str | None = None
    ) -> QueryFunnel:
        if not original_question or not original_question.strip():
            raise QuestionValidationError("Question text is required")
        funnel = QueryFunnel(
            scope_id=scope_id,
            original_question=original_question.strip(),
            matched_template=matched_template,
        )
        await self._repository.save_funnel(funnel)
        logger.info("Created funnel %s for scope %s", funnel.id, scope_id)
        return funnel

    async def get_funnel(self, funnel_id: str) -> QueryFunnel:
        """Fetch a funnel or raise ``FunnelNotFoundError``."""
        funnel = await self._repository.get_funnel(funnel_id)
        if funnel is None:
            raise FunnelNotFoundError(f"Funnel {funnel_id} not found")
        return funnel

    async def find_active_funnel(self, scope_id: str, question: str) -> QueryFunnel | None:
        """Most recent active funnel of the scope created for *question*."""
        wanted = question.strip()
        candidates = [
            funnel
            for funnel in await self._repository.list_funnels(scope_id)
            if funnel.status == FunnelStatus.ACTIVE and funnel.original_question == wanted
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda f: f.created_at)

    async def list_funnels(self, scope_id: str | None = None) -> list[QueryFunnel]:
        """Funnels newest first, optionally restricted to a scope."""
        funnels = await self._repository.list_funnels(scope_id)
        return sorted(funnels, key=lambda f: f.created_at, reverse=True)

    async def archive_funnel(self, funnel_id: str) -> QueryFunnel:
        funnel = await self.get_funnel(funnel_id)
        funnel.status = FunnelStatus.ARCHIVED
        funnel.modified_at = _now()
        await self._repository.save_funnel(funnel)
        return funnel

    async def delete_funnel(self, funnel_id: str) -> None:
        """Delete a funnel together with its sub-questions and cached results."""
        if not await self._repository.delete_funnel(funnel_id):
            raise FunnelNotFoundError(f"Funnel {funnel_id} not found")
        logger.info("Deleted funnel %s", funnel_id)
        self._audit.dispatch("funnel_deleted", funnel_id=funnel_id)

    # ── Sub-questions ───────────────────────────────────────────────────

    async def add_sub_question(
        self,
        funnel_id: str,
        question_text: str,
        *,
        order: int | None = None,
        depends_on: list[int] | None = None,
        sql_query: str | None = None,
    ) -> SubQuestion:
        """Append a sub-question; *order* defaults to one past the current maximum.

        Raises:
            QuestionValidationError: On blank text or an order already in use.
        """
        funnel = await self.get_funnel(funnel_id)
        sub_question = self._new_sub_question(funnel, question_text, order, depends_on, sql_query)
        funnel.sub_questions.append(sub_question)
        funnel.modified_at = _now()
        await self._repository.save_funnel(funnel)
        return sub_question

    async def add_sub_questions(
        self, funnel_id: str, steps: list[DecomposedStep]
    ) -> list[SubQuestion]:
        """Add several sub-questions in one save, using each step number as its order."""
        funnel = await self.get_funnel(funnel_id)
        added = []
        for step in steps:
            sub_question = self._new_sub_question(
                funnel, step.question, step.step, step.depends_on, None
            )
            funnel.sub_questions.append(sub_question)
            added.append(sub_question)
        funnel.modified_at = _now()
        await self._repository.save_funnel(funnel)
        return added

    async def list_sub_questions(
        self, funnel_id: str, include_inactive: bool = False
    ) -> list[SubQuestion]:
        funnel = await self.get_funnel(funnel_id)
        return sorted(
            (sq for sq in funnel.sub_questions if include_inactive or sq.is_active),
            key=lambda sq: sq.order,
        )

    async def get_sub_question(self, sub_question_id: str) -> SubQuestion:
        sub_question = await self._repository.find_sub_question(sub_question_id)
        if sub_question is None:
            raise SubQuestionNotFoundError(f"Sub-question {sub_question_id} not found")
        return sub_question

    async def update_sub_question_text(self, sub_question_id: str, question_text: str) -> SubQuestion:
        if not question_text or not question_text.strip():
            raise QuestionValidationError("Question text is required")
        return await self._update(sub_question_id, question_text=question_text.strip())

    async def update_sub_question_sql(
        self,
        sub_question_id: str,
        sql: str,
        *,
        explanation: str | None = None,
        validation_notes: str | None = None,
        matched_template: str | None = None,
    ) -> SubQuestion:
        """Replace a sub-question's SQL. Status and cached result are left untouched."""
        return await self._update(
            sub_question_id,
            sql_query=sql,
            sql_explanation=explanation,
            sql_validation_notes=validation_notes,
            sql_matched_template=matched_template,
        )

    async def reorder_sub_questions(self, funnel_id: str, ordered_ids: list[str]) -> list[SubQuestion]:
        """Assign orders 1..N following *ordered_ids*.

        *ordered_ids* must list every active sub-question exactly once;
        inactive ones are placed after them in their existing order.

        Raises:
            QuestionValidationError: If the ids do not match the funnel's
                active sub-questions.
        """
        funnel = await self.get_funnel(funnel_id)
        active = {sq.id: sq for sq in funnel.sub_questions if sq.is_active}
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(active):
            raise QuestionValidationError(
                "Reorder must list every active sub-question of the funnel exactly once"
            )
        inactive = sorted(
            (sq for sq in funnel.sub_questions if not sq.is_active), key=lambda sq: sq.order
        )
        now = _now()
        for position, sub_question in enumerate(
            [active[i] for i in ordered_ids] + inactive, start=1
        ):
            sub_question.order = position
            sub_question.modified_at = now
        funnel.modified_at = now
        await self._repository.save_funnel(funnel)
        return await self.list_sub_questions(funnel_id)

    async def deactivate_sub_question(self, sub_question_id: str) -> SubQuestion:
        return await self._update(sub_question_id, is_active=False)

    async def set_status(
        self, sub_question_id: str, status: SubQuestionStatus | str
    ) -> SubQuestion:
        """Move a sub-question to *status*.

        Raises:
            InvalidStatusTransitionError: If the transition is not allowed.
        """
        funnel, sub_question = await self._locate(sub_question_id)
        sub_question.status = ensure_transition(sub_question.status, status)
        sub_question.modified_at = _now()
        await self._repository.save_funnel(funnel)
        return sub_question

    async def store_result(
        self,
        sub_question_id: str,
        columns: list[str],
        rows: list[dict[str, Any]],
        sql: str | None = None,
    ) -> SubQuestionResult:
        """Cache a result set against the SQL that produced it (the current SQL by default)."""
        funnel, sub_question = await self._locate(sub_question_id)
        result = SubQuestionResult(
            columns=columns,
            rows=rows,
            row_count=len(rows),
            sql=sql if sql is not None else (sub_question.sql_query or ""),
        )
        sub_question.result = result
        sub_question.last_executed_at = result.executed_at
        sub_question.modified_at = _now()
        await self._repository.save_funnel(funnel)
        return result

    async def get_result(self, sub_question_id: str) -> SubQuestionResult | None:
        return (await self.get_sub_question(sub_question_id)).result

    @staticmethod
    def is_result_stale(sub_question: SubQuestion) -> bool:
        """True when a cached result exists but was produced by different SQL."""
        if sub_question.result is None:
            return False
        return _normalize_sql(sub_question.result.sql) != _normalize_sql(sub_question.sql_query)

    # ── Decomposition, generation and execution ─────────────────────────

    async def decompose(
        self,
        question: str,
        scope_id: str,
        *,
        model_id: str | None = None,
        schema_context: str | None = None,
    ) -> QueryFunnel:
        """Decompose *question* into a funnel, reusing an active one if it exists.

        The model is asked once; an unusable answer falls back to splitting
        the question on conjunctions.

        Raises:
            QuestionValidationError: If the question is blank.
        """
        if not question or not question.strip():
            raise QuestionValidationError("Question text is required")

        existing = await self.find_active_funnel(scope_id, question)
        if existing is not None:
            logger.info("Reusing funnel %s for '%s'", existing.id, question[:100])
            return existing

        decomposition = await self._decompose_with_model(question, model_id, schema_context)
        funnel = await self.create_funnel(scope_id, question, decomposition.matched_template)
        await self.add_sub_questions(funnel.id, decomposition.sub_questions)
        funnel = await self.get_funnel(funnel.id)

        logger.info(
            "Created funnel %s with %d sub-questions", funnel.id, len(funnel.sub_questions)
        )
        self._audit.dispatch(
            "funnel_decomposed",
            funnel_id=funnel.id,
            scope_id=scope_id,
            question=question,
            sub_question_count=len(funnel.sub_questions),
            matched_template=funnel.matched_template,
        )
        return funnel

    async def _decompose_with_model(
        self, question: str, model_id: str | None, schema_context: str | None
    ) -> Decomposition:
        if self._model_router is None:
            return heuristic_decomposition(question)
        try:
            response = await asyncio.wait_for(
                self._model_router.complete(
                    DECOMPOSITION_SYSTEM_PROMPT,
                    build_decomposition_prompt(question, schema_context),
                    model_id=model_id,
                    max_tokens=DECOMPOSITION_MAX_TOKENS,
                    temperature=DECOMPOSITION_TEMPERATURE,
                ),
                timeout=self._model_timeout_seconds,
            )
            return parse_decomposition_response(response, question)
        except Exception as exc:
            logger.warning(
                "Model decomposition failed for '%s' (%s); splitting heuristically",
                question[:100],
                exc,
            )
            return heuristic_decomposition(question)

    async def generate_sub_question_sql(
        self, sub_question_id: str, scope_id: str, *, model_id: str | None = None
    ) -> SubQuestion:
        """Generate, validate and store SQL for one sub-question.

        SQL of the steps it depends on (or the preceding step) is passed to
        the generator so it can build on it. Status is unchanged.

        Raises:
            GenerationError: If generation needs clarification or the SQL
                fails validation.
        """
        if self._sql_generator is None or self._metadata_provider is None:
            raise GenerationError("SQL generation is not configured for funnels")

        funnel, sub_question = await self._locate(sub_question_id)
        classification = _sub_question_classification(sub_question.question_text)
        context = await self._metadata_provider.discover_context(
            sub_question.question_text, scope_id, classification
        )
        prior_sql = self._prior_sql(funnel, sub_question)

        generated = await self._sql_generator.generate(
            context, scope_id, model_id=model_id, prior_sql=prior_sql
        )
        if generated.needs_clarification or not generated.sql:
            raise GenerationError(
                generated.reasoning or "SQL generation needs clarification", recoverable=True
            )

        rewrite = fix_order_by_aliases(generated.sql)
        validation = self._validator.validate(rewrite.sql)
        if not validation.is_valid:
            raise GenerationError(
                f"Generated SQL failed validation: {summarize_violations(validation.errors)}",
                recoverable=is_recoverable(validation.errors),
            )

        notes = [n for n in [generated.validation_notes, *rewrite.issues, *validation.warnings] if n]
        sql = enforce_row_limit(rewrite.sql, self._row_limit)
        updated = await self.update_sub_question_sql(
            sub_question_id,
            sql,
            explanation=generated.explanation,
            validation_notes="\n".join(notes) or None,
            matched_template=generated.matched_template,
        )
        self._audit.dispatch(
            "sub_question_sql_generated",
            funnel_id=funnel.id,
            sub_question_id=sub_question_id,
            sql=sql,
        )
        return updated

    async def execute_sub_question(
        self, sub_question_id: str, *, timeout_seconds: int | None = None
    ) -> SubQuestion:
        """Run a sub-question's SQL and cache the result.

        The stored SQL is validated first and capped at the row limit
        before it reaches the executor. ``pending -> running -> completed``;
        on a database error the status becomes ``failed`` with the
        classified error recorded.

        Raises:
            GenerationError: If the sub-question has no SQL yet or its SQL
                fails validation. The status is left unchanged.
            InvalidStatusTransitionError: If it is not ``pending``.
            ExecutionError: If the database rejects the statement.
        """
        if self._sql_executor is None:
            raise ExecutionError("SQL execution is not configured for funnels")

        sub_question = await self.get_sub_question(sub_question_id)
        if not sub_question.sql_query:
            raise GenerationError(f"Sub-question {sub_question_id} has no SQL to execute")

        rewrite = fix_order_by_aliases(sub_question.sql_query)
        validation = self._validator.validate(rewrite.sql)
        if not validation.is_valid:
            logger.warning(
                "Refusing to execute sub-question %s: %s",
                sub_question_id,
                summarize_violations(validation.errors),
            )
            raise GenerationError(
                f"Sub-question SQL failed validation: {summarize_violations(validation.errors)}",
                recoverable=True,
            )

        await self.set_status(sub_question_id, SubQuestionStatus.RUNNING)
        sql = enforce_row_limit(rewrite.sql, self._row_limit)
        try:
            outcome = await self._sql_executor.execute(
                sql, timeout_seconds or self._query_timeout_seconds
            )
        except Exception as exc:
            logger.exception("Execution of sub-question %s raised", sub_question_id)
            outcome = {"success": False, "error": str(exc)}

        if not outcome.get("success"):
            message = outcome.get("error") or "Query execution failed"
            error_type = classify_error(message).value
            funnel, failed = await self._locate(sub_question_id)
            failed.status = ensure_transition(failed.status, SubQuestionStatus.FAILED)
            failed.last_error = message
            failed.last_error_type = error_type
            failed.last_executed_at = _now()
            failed.modified_at = failed.last_executed_at
            await self._repository.save_funnel(funnel)
            self._audit.dispatch(
                "sub_question_failed",
                sub_question_id=sub_question_id,
                error_type=error_type,
                error=message,
            )
            raise ExecutionError(message, error_type)

        # Keyed on the stored SQL so the cap alone never marks the result stale
        await self.store_result(
            sub_question_id,
            outcome.get("columns", []),
            outcome.get("rows", []),
            sub_question.sql_query,
        )
        funnel, completed = await self._locate(sub_question_id)
        completed.status = ensure_transition(completed.status, SubQuestionStatus.COMPLETED)
        completed.last_error = None
        completed.last_error_type = None
        await self._repository.save_funnel(funnel)
        self._audit.dispatch(
            "sub_question_executed",
            sub_question_id=sub_question_id,
            row_count=completed.result.row_count if completed.result else 0,
        )
        return completed

    # ── Internals ───────────────────────────────────────────────────────

    def _new_sub_question(
        self,
        funnel: QueryFunnel,
        question_text: str,
        order: int | None,
        depends_on: list[int] | None,
        sql_query: str | None,
    ) -> SubQuestion:
        if not question_text or not question_text.strip():
            raise QuestionValidationError("Question text is required")
        used = {sq.order for sq in funnel.sub_questions}
        if order is None:
            order = max(used, default=0) + 1
        elif order in used:
            raise QuestionValidationError(f"Order {order} is already used in funnel {funnel.id}")
        return SubQuestion(
            funnel_id=funnel.id,
            order=order,
            question_text=question_text.strip(),
            depends_on=depends_on or [],
            sql_query=sql_query,
        )

    async def _locate(self, sub_question_id: str) -> tuple[QueryFunnel, SubQuestion]:
        sub_question = await self.get_sub_question(sub_question_id)
        funnel = await self.get_funnel(sub_question.funnel_id)
        for candidate in funnel.sub_questions:
            if candidate.id == sub_question_id:
                return funnel, candidate
        raise SubQuestionNotFoundError(f"Sub-question {sub_question_id} not found")

    async def _update(self, sub_question_id: str, **changes: Any) -> SubQuestion:
        funnel, sub_question = await self._locate(sub_question_id)
        for field, value in changes.items():
            setattr(sub_question, field, value)
        sub_question.modified_at = _now()
        funnel.modified_at = sub_question.modified_at
        await self._repository.save_funnel(funnel)
        return sub_question

    @staticmethod
    def _prior_sql(funnel: QueryFunnel, sub_question: SubQuestion) -> str | None:
        """SQL of the last dependency with SQL, else of the closest earlier step."""
        earlier = sorted(
            (
                sq
                for sq in funnel.sub_questions
                if sq.is_active and sq.order < sub_question.order and sq.sql_query
            ),
            key=lambda sq: sq.order,
        )
        dependencies = [sq for sq in earlier if sq.order in sub_question.depends_on]
        chosen = dependencies or earlier
        return chosen[-1].sql_query if chosen else None
