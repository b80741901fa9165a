"""
Conversational refinement of an existing query.

One model call interprets the natural-language delta. The answer either
modifies the semantic context, which is re-compiled through the SQL
generator, or requests a direct edit applied by ``edits``. New SQL passes
the same rewrite, validation and row-limit steps as any generated SQL.
"""

import asyncio
import logging

from config.settings import Settings
from entities.query_validator import SQLValidator, enforce_row_limit, fix_order_by_aliases
from entities.refinement.edits import apply_modification
from entities.refinement.prompts import (
    REFINEMENT_MAX_TOKENS,
    REFINEMENT_SYSTEM_PROMPT,
    REFINEMENT_TEMPERATURE,
    build_refinement_prompt,
    parse_refinement_response,
)
from entities.shared.audit import AuditDispatcher
from entities.shared.error_recovery import is_recoverable, summarize_violations
from entities.shared.errors import GenerationError, QuestionValidationError
from entities.shared.protocols import ModelRouter, SqlGenerator
from models import RefinementResult, SemanticContext

logger = logging.getLogger(__name__)


class Refiner:
    """Applies free-text refinement requests to generated SQL.

    Args:
        model_router: Interprets the refinement request.
        audit: Dispatcher for refinement events.
        sql_generator: Re-compiles modified contexts (context edits fail
            without one).
        validator: Structural SQL validator.
        model_timeout_seconds: Bound on the model call.
        row_limit: Row cap injected into unbounded SQL.
    """

    def __init__(
        self,
        model_router: ModelRouter,
        audit: AuditDispatcher,
        *,
        sql_generator: SqlGenerator | None = None,
        validator: SQLValidator | None = None,
        model_timeout_seconds: float = 60.0,
        row_limit: int = 1000,
    ) -> None:
        self._model_router = model_router
        self._audit = audit
        self._sql_generator = sql_generator
        self._validator = validator or SQLValidator()
        self._model_timeout_seconds = model_timeout_seconds
        self._row_limit = row_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        model_router: ModelRouter,
        audit: AuditDispatcher,
        sql_generator: SqlGenerator | None = None,
    ) -> "Refiner":
        return cls(
            model_router,
            audit,
            sql_generator=sql_generator,
            validator=SQLValidator.from_settings(settings),
            model_timeout_seconds=settings.model_timeout_seconds,
            row_limit=settings.default_row_limit,
        )

    async def refine(
        self,
        scope_id: str,
        question: str,
        current_sql: str,
        refinement_request: str,
        context: SemanticContext | None = None,
        *,
        model_id: str | None = None,
    ) -> RefinementResult:
        """Refine *current_sql* according to *refinement_request*.

        Args:
            scope_id: Customer or data-scope identifier.
            question: The question *current_sql* answers.
            current_sql: SQL to refine.
            refinement_request: Natural-language delta, e.g. "last 6 months".
            context: Semantic context *current_sql* was generated from.
            model_id: Deployment override.

        Returns:
            ``RefinementResult``; ``new_sql`` is set only when it differs.

        Raises:
            QuestionValidationError: On a blank scope, SQL or request.
            GenerationError: If the model call fails, the regenerated SQL
                needs clarification, or the new SQL fails validation.
        """
        if not scope_id or not scope_id.strip():
            raise QuestionValidationError("Customer ID is required")
        if not refinement_request or not refinement_request.strip():
            raise QuestionValidationError("Refinement request is required")
        if not current_sql or not current_sql.strip():
            raise QuestionValidationError("Current SQL is required")

        logger.info("Refining query for '%s': %s", question[:100], refinement_request[:100])
        try:
            response = await asyncio.wait_for(
                self._model_router.complete(
                    REFINEMENT_SYSTEM_PROMPT,
                    build_refinement_prompt(question, current_sql, refinement_request, context),
                    model_id=model_id,
                    max_tokens=REFINEMENT_MAX_TOKENS,
                    temperature=REFINEMENT_TEMPERATURE,
                ),
                timeout=self._model_timeout_seconds,
            )
        except TimeoutError as exc:
            raise GenerationError("Refinement timed out") from exc
        except Exception as exc:
            logger.exception("Refinement model call failed")
            raise GenerationError("Failed to process refinement") from exc

        plan = parse_refinement_response(response)
        new_sql = current_sql

        if plan.modified_context is not None:
            new_sql = await self._regenerate(plan.modified_context, scope_id, model_id, current_sql)
        elif plan.sql_modifications is not None:
            new_sql = apply_modification(current_sql, plan.sql_modifications)

        sql_changed = new_sql != current_sql
        if sql_changed:
            new_sql = self._checked(new_sql)
            sql_changed = new_sql != current_sql

        self._audit.dispatch(
            "refinement",
            scope_id=scope_id,
            question=question,
            refinement_request=refinement_request,
            sql_changed=sql_changed,
            modification=plan.sql_modifications.type if plan.sql_modifications else None,
        )
        return RefinementResult(
            explanation=plan.explanation,
            new_sql=new_sql if sql_changed else None,
            sql_changed=sql_changed,
            change_explanation=plan.change_explanation,
        )

    async def _regenerate(
        self,
        context: SemanticContext,
        scope_id: str,
        model_id: str | None,
        current_sql: str,
    ) -> str:
        if self._sql_generator is None:
            raise GenerationError("Context refinement requires an SQL generator")
        generated = await self._sql_generator.generate(
            context,
            scope_id,
            model_id=model_id,
            clarifications=context.clarifications or None,
            prior_sql=current_sql,
        )
        if generated.needs_clarification or not generated.sql:
            raise GenerationError(
                generated.reasoning or "Refinement needs clarification", recoverable=True
            )
        return generated.sql

    def _checked(self, sql: str) -> str:
        """Rewrite, validate and cap refined SQL."""
        sql = fix_order_by_aliases(sql).sql
        validation = self._validator.validate(sql)
        if not validation.is_valid:
            raise GenerationError(
                f"Refined SQL failed validation: {summarize_violations(validation.errors)}",
                recoverable=is_recoverable(validation.errors),
            )
        return enforce_row_limit(sql, self._row_limit)
