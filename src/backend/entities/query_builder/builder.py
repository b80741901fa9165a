"""Query builder logic.

Generates SQL from a discovered semantic context with one model call.
Implements the ``SqlGenerator`` protocol.
"""

from __future__ import annotations

import asyncio
import logging

from config.settings import Settings
from entities.query_builder.prompts import (
    GENERATION_MAX_TOKENS,
    GENERATION_SYSTEM_PROMPT,
    GENERATION_TEMPERATURE,
    build_generation_prompt,
    parse_generation_response,
)
from entities.query_validator import qualify_tables
from entities.shared.errors import GenerationError
from entities.shared.protocols import ModelRouter
from models import GeneratedSql, SemanticContext

logger = logging.getLogger(__name__)


class ModelSqlGenerator:
    """``SqlGenerator`` backed by a ``ModelRouter`` completion.

    Args:
        model_router: Issues the completion.
        default_model_id: Deployment used when the caller passes none.
        required_schema: Schema bare table names are qualified with.
        timeout_seconds: Bound on the model call.
    """

    def __init__(
        self,
        model_router: ModelRouter,
        *,
        default_model_id: str | None = None,
        required_schema: str = "rpt",
        timeout_seconds: float = 60.0,
    ) -> None:
        self._model_router = model_router
        self._default_model_id = default_model_id
        self._required_schema = required_schema
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, model_router: ModelRouter) -> ModelSqlGenerator:
        return cls(
            model_router,
            default_model_id=settings.generator_model,
            required_schema=settings.required_schema,
            timeout_seconds=settings.model_timeout_seconds,
        )

    async def generate(
        self,
        context: SemanticContext,
        scope_id: str,
        *,
        model_id: str | None = None,
        clarifications: dict[str, str] | None = None,
        prior_sql: str | None = None,
    ) -> GeneratedSql:
        """Generate SQL for *context*.

        Args:
            context: Semantic context, including the question.
            scope_id: Customer or data-scope identifier.
            model_id: Deployment override.
            clarifications: Answers to earlier clarification questions.
            prior_sql: SQL of an earlier step to build on.

        Returns:
            ``GeneratedSql`` with SQL or clarification questions.

        Raises:
            GenerationError: If the model call fails, times out or returns
                something that is not JSON.
        """
        logger.info(
            "Generating SQL from %d form(s) for: %s (scope=%s)",
            len(context.forms),
            context.question[:100],
            scope_id,
        )
        system = GENERATION_SYSTEM_PROMPT.format(schema=self._required_schema)
        try:
            response = await asyncio.wait_for(
                self._model_router.complete(
                    system,
                    build_generation_prompt(context, clarifications, prior_sql),
                    model_id=model_id or self._default_model_id,
                    max_tokens=GENERATION_MAX_TOKENS,
                    temperature=GENERATION_TEMPERATURE,
                ),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as exc:
            raise GenerationError(
                f"SQL generation timed out after {self._timeout_seconds}s"
            ) from exc
        except Exception as exc:
            logger.exception("Query generation error")
            raise GenerationError(f"SQL generation failed: {exc}") from exc

        try:
            generated = parse_generation_response(response)
        except ValueError as exc:
            raise GenerationError(str(exc)) from exc

        if generated.sql:
            generated.sql = qualify_tables(generated.sql, self._required_schema)
        return generated
