"""
Three-mode orchestrator.

Routes a question through template matching, direct semantic generation
and funnel decomposition, raising a clarification interrupt whenever the
question is not actionable yet. Every path ends in one variant of
``OrchestrationResult``; generation and validation failures become a
clarification or an ``ErrorOutcome`` and are never raised to the caller.
Only bad input (``QuestionValidationError``) propagates.
"""

import logging
import time

from config.settings import Settings
from entities.funnel import FunnelEngine
from entities.intent_classifier import IntentClassifier
from entities.orchestrator.clarification import (
    apply_clarifications,
    clarified_classification,
    intent_clarification,
    term_clarifications,
)
from entities.orchestrator.complexity import analyze_complexity
from entities.query_validator import SQLValidator, enforce_row_limit, fix_order_by_aliases
from entities.shared.audit import AuditDispatcher
from entities.shared.error_recovery import (
    build_error_message,
    classify_error,
    summarize_violations,
)
from entities.shared.errors import ExecutionError, GenerationError, QuestionValidationError
from entities.shared.protocols import (
    NoOpReporter,
    ProgressReporter,
    SemanticMetadataProvider,
    SqlGenerator,
)
from entities.template_matcher import TemplateMatcher, bind_placeholders
from models import (
    ClarificationOutcome,
    ClassificationOptions,
    ClassificationResult,
    ComplexityAnalysis,
    DirectOutcome,
    ErrorOutcome,
    FilterMetrics,
    FunnelOutcome,
    OrchestrationResult,
    QueryFunnel,
    SemanticContext,
    SubQuestion,
    SubQuestionStatus,
    TemplateCandidate,
    TemplateOutcome,
    ThinkingStep,
    ValidationResult,
)

logger = logging.getLogger(__name__)


class _Trace:
    """Collects thinking steps and mirrors them to a progress reporter."""

    def __init__(self, reporter: ProgressReporter | None) -> None:
        self.steps: list[ThinkingStep] = []
        self._reporter = reporter or NoOpReporter()
        self._started: dict[str, float] = {}

    def start(self, step_id: str, label: str) -> ThinkingStep:
        step = ThinkingStep(id=step_id, label=label, status="running")
        self.steps.append(step)
        self._started[step_id] = time.perf_counter()
        self._reporter.step_start(label)
        return step

    def finish(self, step: ThinkingStep, detail: str | None = None, *, failed: bool = False) -> None:
        step.status = "error" if failed else "complete"
        step.detail = detail
        started = self._started.pop(step.id, None)
        if started is not None:
            step.duration_ms = int((time.perf_counter() - started) * 1000)
        self._reporter.step_end(step.label)


def next_sub_question(funnel: QueryFunnel) -> SubQuestion | None:
    """First active sub-question, by order, that has not completed."""
    for sub_question in sorted(funnel.sub_questions, key=lambda sq: sq.order):
        if sub_question.is_active and sub_question.status != SubQuestionStatus.COMPLETED:
            return sub_question
    return None


class ThreeModeOrchestrator:
    """Resolves questions into SQL: template, then direct, then funnel.

    Args:
        classifier: Intent classifier.
        template_matcher: Ranks catalog templates.
        metadata_provider: Discovers the semantic context for direct mode.
        sql_generator: Generates SQL from a semantic context.
        funnel_engine: Decomposes complex questions.
        audit: Dispatcher for orchestration events.
        validator: Structural SQL validator.
        actionability_threshold: Classification confidence below which a
            non-template question triggers a clarification.
        max_generation_attempts: Direct attempts before falling back to a funnel.
        row_limit: Row cap injected into unbounded SQL.
    """

    def __init__(
        self,
        classifier: IntentClassifier,
        template_matcher: TemplateMatcher,
        metadata_provider: SemanticMetadataProvider,
        sql_generator: SqlGenerator,
        funnel_engine: FunnelEngine,
        audit: AuditDispatcher,
        *,
        validator: SQLValidator | None = None,
        actionability_threshold: float = 0.5,
        max_generation_attempts: int = 2,
        row_limit: int = 1000,
    ) -> None:
        self._classifier = classifier
        self._template_matcher = template_matcher
        self._metadata_provider = metadata_provider
        self._sql_generator = sql_generator
        self._funnel_engine = funnel_engine
        self._audit = audit
        self._validator = validator or SQLValidator()
        self._actionability_threshold = actionability_threshold
        self._max_generation_attempts = max(1, max_generation_attempts)
        self._row_limit = row_limit

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        classifier: IntentClassifier,
        template_matcher: TemplateMatcher,
        metadata_provider: SemanticMetadataProvider,
        sql_generator: SqlGenerator,
        funnel_engine: FunnelEngine,
        audit: AuditDispatcher,
    ) -> "ThreeModeOrchestrator":
        return cls(
            classifier,
            template_matcher,
            metadata_provider,
            sql_generator,
            funnel_engine,
            audit,
            validator=SQLValidator.from_settings(settings),
            actionability_threshold=settings.actionability_threshold,
            max_generation_attempts=settings.max_generation_attempts,
            row_limit=settings.default_row_limit,
        )

    # ── Public API ──────────────────────────────────────────────────────

    async def ask(
        self,
        question: str,
        scope_id: str,
        model_id: str | None = None,
        *,
        reporter: ProgressReporter | None = None,
    ) -> OrchestrationResult:
        """Resolve a question.

        Raises:
            QuestionValidationError: If the question or scope is blank.
        """
        self._check_input(question, scope_id)
        trace = _Trace(reporter)
        logger.info("Orchestrating question: %s", question[:100])

        step = trace.start("classify", "Understanding intent")
        classification = await self._classifier.classify(
            question, scope_id, ClassificationOptions(model_id=model_id)
        )
        trace.finish(
            step,
            f"{classification.intent.value} ({classification.confidence:.2f}, "
            f"{classification.method})",
        )

        result = await self._resolve(
            question,
            scope_id,
            classification,
            trace,
            model_id=model_id,
            clarifications={},
            check_actionability=True,
        )
        return self._finish(result, scope_id)

    async def ask_with_clarifications(
        self,
        question: str,
        scope_id: str,
        clarifications: dict[str, str],
        model_id: str | None = None,
        *,
        reporter: ProgressReporter | None = None,
    ) -> OrchestrationResult:
        """Resume a question with the user's clarification answers.

        Answers are keyed by clarification id: placeholder names for
        templates, terms for ambiguous bindings and ``intent`` for the
        intent question. The actionability check is not repeated.

        Raises:
            QuestionValidationError: If the question or scope is blank.
        """
        self._check_input(question, scope_id)
        trace = _Trace(reporter)
        logger.info(
            "Resuming question with %d clarification(s): %s", len(clarifications), question[:100]
        )

        step = trace.start("apply_clarifications", "Applying your selections")
        classification = await self._classifier.classify(
            question, scope_id, ClassificationOptions(model_id=model_id)
        )
        classification = clarified_classification(classification, clarifications)
        trace.finish(step, f"{len(clarifications)} clarification(s) applied")

        result = await self._resolve(
            question,
            scope_id,
            classification,
            trace,
            model_id=model_id,
            clarifications=clarifications,
            check_actionability=False,
        )
        return self._finish(result, scope_id)

    async def execute_sub_question(
        self, sub_question_id: str, *, reporter: ProgressReporter | None = None
    ) -> FunnelOutcome | ErrorOutcome:
        """Execute one funnel step.

        Database errors become an ``ErrorOutcome`` with the classified
        error type; the sub-question itself is left ``failed``.
        """
        trace = _Trace(reporter)
        step = trace.start("execute_query", "Executing query")
        try:
            sub_question = await self._funnel_engine.execute_sub_question(sub_question_id)
        except ExecutionError as exc:
            trace.finish(step, str(exc), failed=True)
            failed = await self._funnel_engine.get_sub_question(sub_question_id)
            return ErrorOutcome(
                question=failed.question_text,
                thinking=trace.steps,
                error=build_error_message(classify_error(str(exc)), str(exc)),
                error_type=exc.error_type,
                sql=failed.sql_query,
            )

        funnel = await self._funnel_engine.get_funnel(sub_question.funnel_id)
        row_count = sub_question.result.row_count if sub_question.result else 0
        trace.finish(step, f"{row_count} row(s)")
        return FunnelOutcome(
            question=funnel.original_question,
            thinking=trace.steps,
            funnel=funnel,
            next_sub_question=next_sub_question(funnel),
        )

    # ── Modes ───────────────────────────────────────────────────────────

    async def _resolve(
        self,
        question: str,
        scope_id: str,
        classification: ClassificationResult,
        trace: _Trace,
        *,
        model_id: str | None,
        clarifications: dict[str, str],
        check_actionability: bool,
    ) -> OrchestrationResult:
        step = trace.start("template_match", "Checking for matching template")
        match = await self._template_matcher.match(question, scope_id)
        if match.applied and match.best is not None:
            trace.finish(step, f"Matched '{match.best.template.name}' ({match.confidence:.2f})")
            outcome = self._apply_template(
                question, classification, match.best, trace, clarifications
            )
            if outcome is not None:
                return outcome
        else:
            trace.finish(step, match.message or "No template match found")

        if check_actionability and classification.confidence < self._actionability_threshold:
            logger.info(
                "Confidence %.2f below actionability threshold %.2f; asking for clarification",
                classification.confidence,
                self._actionability_threshold,
            )
            return ClarificationOutcome(
                question=question,
                classification=classification,
                thinking=trace.steps,
                clarifications=[intent_clarification(classification)],
                reasoning=classification.reasoning
                or "I'm not sure what kind of analysis you need.",
                template_suggestions=match.suggestions,
            )

        step = trace.start("complexity_check", "Analyzing question complexity")
        complexity = analyze_complexity(question)
        trace.finish(step, f"{complexity.level} ({complexity.score}/10): {', '.join(complexity.reasons)}")

        if complexity.level == "complex":
            return await self._funnel(question, scope_id, classification, trace, complexity, model_id)
        return await self._direct(
            question,
            scope_id,
            classification,
            trace,
            complexity,
            model_id,
            clarifications,
            match.suggestions,
        )

    def _apply_template(
        self,
        question: str,
        classification: ClassificationResult,
        candidate: TemplateCandidate,
        trace: _Trace,
        clarifications: dict[str, str],
    ) -> OrchestrationResult | None:
        """Bind and validate a matched template. ``None`` means fall through to direct mode."""
        template = candidate.template
        step = trace.start("template_apply", f"Applying template {template.name}")
        binding = bind_placeholders(template, question, clarifications)
        if not binding.complete:
            trace.finish(step, f"{len(binding.clarifications)} placeholder(s) need a value")
            return ClarificationOutcome(
                question=question,
                classification=classification,
                thinking=trace.steps,
                clarifications=binding.clarifications,
                reasoning=f"The '{template.name}' template needs more detail.",
                template_suggestions=[candidate],
            )

        rewrite = fix_order_by_aliases(binding.sql)
        validation = self._validator.validate(rewrite.sql)
        if not validation.is_valid:
            summary = summarize_violations(validation.errors)
            logger.warning("Template %s produced invalid SQL: %s", template.id, summary)
            trace.finish(step, summary, failed=True)
            return None

        trace.finish(step, f"Bound {len(binding.values)} placeholder(s)")
        return TemplateOutcome(
            question=question,
            classification=classification,
            thinking=trace.steps,
            sql=enforce_row_limit(rewrite.sql, self._row_limit),
            explanation=template.description or f"Answered with the '{template.name}' template.",
            template=candidate,
            bindings=binding.values,
            validation=validation,
        )

    async def _direct(
        self,
        question: str,
        scope_id: str,
        classification: ClassificationResult,
        trace: _Trace,
        complexity: ComplexityAnalysis,
        model_id: str | None,
        clarifications: dict[str, str],
        suggestions: list[TemplateCandidate],
    ) -> OrchestrationResult:
        step = trace.start("context_discovery", "Discovering semantic context")
        try:
            context = await self._metadata_provider.discover_context(
                question, scope_id, classification
            )
            trace.finish(
                step,
                f"{len(context.forms)} form(s), {len(context.fields)} field(s), "
                f"{len(context.join_paths)} join path(s)",
            )
        except Exception:
            logger.exception("Context discovery failed for '%s'", question[:100])
            context = SemanticContext(
                question=question,
                intent=classification.intent,
                confidence=classification.confidence,
            )
            trace.finish(step, "Context discovery failed, using fallback")

        if not context.question:
            context.question = question
        if clarifications:
            context = apply_clarifications(context, clarifications)

        ambiguous = context.ambiguous_terms()
        if ambiguous:
            return ClarificationOutcome(
                question=question,
                classification=classification,
                thinking=trace.steps,
                clarifications=term_clarifications(ambiguous),
                reasoning="Some terms in your question match more than one field.",
                partial_context=context,
                template_suggestions=suggestions,
            )

        validation: ValidationResult | None = None
        for attempt in range(1, self._max_generation_attempts + 1):
            step_id = "sql_generation" if attempt == 1 else f"sql_generation_{attempt}"
            step = trace.start(step_id, "Generating SQL query")
            try:
                generated = await self._sql_generator.generate(
                    context,
                    scope_id,
                    model_id=model_id,
                    clarifications=clarifications or None,
                )
            except GenerationError as exc:
                trace.finish(step, str(exc), failed=True)
                if exc.recoverable:
                    return ClarificationOutcome(
                        question=question,
                        classification=classification,
                        thinking=trace.steps,
                        reasoning=str(exc),
                        partial_context=context,
                        template_suggestions=suggestions,
                    )
                return ErrorOutcome(
                    question=question,
                    classification=classification,
                    thinking=trace.steps,
                    error=str(exc),
                    error_type="generation_failure",
                )
            except Exception as exc:
                logger.exception("SQL generation failed for '%s'", question[:100])
                trace.finish(step, str(exc), failed=True)
                error_type = classify_error(str(exc))
                return ErrorOutcome(
                    question=question,
                    classification=classification,
                    thinking=trace.steps,
                    error=build_error_message(error_type, str(exc)),
                    error_type=error_type.value,
                )

            if generated.needs_clarification:
                trace.finish(step, "Clarification needed")
                return ClarificationOutcome(
                    question=question,
                    classification=classification,
                    thinking=trace.steps,
                    clarifications=generated.clarifications,
                    reasoning=generated.reasoning,
                    partial_context=context,
                    template_suggestions=suggestions,
                )

            rewrite = fix_order_by_aliases(generated.sql)
            validation = self._validator.validate(rewrite.sql)
            if validation.is_valid:
                trace.finish(step, f"Valid SQL on attempt {attempt}")
                return DirectOutcome(
                    question=question,
                    classification=classification,
                    thinking=trace.steps,
                    sql=enforce_row_limit(rewrite.sql, self._row_limit),
                    explanation=generated.explanation,
                    context=context,
                    filter_metrics=FilterMetrics.from_context(context),
                    validation=validation,
                    template_suggestions=suggestions,
                    complexity=complexity,
                )

            summary = summarize_violations(validation.errors)
            logger.warning("Direct generation attempt %d failed validation: %s", attempt, summary)
            trace.finish(step, summary, failed=True)

        logger.info(
            "Direct generation failed %d time(s); decomposing '%s'",
            self._max_generation_attempts,
            question[:100],
        )
        return await self._funnel(
            question, scope_id, classification, trace, complexity, model_id, validation
        )

    async def _funnel(
        self,
        question: str,
        scope_id: str,
        classification: ClassificationResult,
        trace: _Trace,
        complexity: ComplexityAnalysis,
        model_id: str | None,
        validation: ValidationResult | None = None,
    ) -> OrchestrationResult:
        step = trace.start("funnel_decompose", "Breaking down question into steps")
        try:
            funnel = await self._funnel_engine.decompose(question, scope_id, model_id=model_id)
        except Exception as exc:
            logger.exception("Funnel decomposition failed for '%s'", question[:100])
            trace.finish(step, str(exc), failed=True)
            return ErrorOutcome(
                question=question,
                classification=classification,
                thinking=trace.steps,
                error="I couldn't break this question into steps. Please try rephrasing it.",
                error_type="generation_failure",
                validation=validation,
            )

        trace.finish(step, f"Decomposed into {len(funnel.sub_questions)} step(s)")
        return FunnelOutcome(
            question=question,
            classification=classification,
            thinking=trace.steps,
            funnel=funnel,
            next_sub_question=next_sub_question(funnel),
            complexity=complexity,
        )

    # ── Helpers ─────────────────────────────────────────────────────────

    @staticmethod
    def _check_input(question: str, scope_id: str) -> None:
        if not question or not question.strip():
            raise QuestionValidationError("Question text is required")
        if not scope_id or not scope_id.strip():
            raise QuestionValidationError("Customer ID is required")

    def _finish(self, result: OrchestrationResult, scope_id: str) -> OrchestrationResult:
        logger.info("Question resolved in %s mode: %s", result.mode, result.question[:100])
        self._audit.dispatch(
            "orchestration",
            scope_id=scope_id,
            question=result.question,
            mode=result.mode,
            intent=result.classification.intent.value if result.classification else None,
            sql=getattr(result, "sql", None),
        )
        return result
