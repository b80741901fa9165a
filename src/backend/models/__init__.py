"""
Shared models for entities.

These models are used across the classifier, matcher, validator,
funnel engine, orchestrator, and API. All models are re-exported here.
"""

from .classification import (
    INTENT_DESCRIPTIONS,
    ClassificationOptions,
    ClassificationResult,
    Question,
    QueryIntent,
)
from .funnel import (
    Decomposition,
    DecomposedStep,
    FunnelStatus,
    QueryFunnel,
    SubQuestion,
    SubQuestionResult,
    SubQuestionStatus,
)
from .generation import ClarificationOption, ClarificationQuestion, GeneratedSql
from .orchestration import (
    ClarificationOutcome,
    ComplexityAnalysis,
    DirectOutcome,
    ErrorOutcome,
    FunnelOutcome,
    OrchestrationResult,
    TemplateOutcome,
    ThinkingStep,
)
from .refinement import RefinementPlan, RefinementResult, SqlModification
from .semantic import (
    FieldBinding,
    FilterMetrics,
    FilterSpec,
    JoinPath,
    SemanticContext,
    TermBinding,
    TimeRange,
)
from .templates import (
    QueryTemplate,
    TemplateCandidate,
    TemplateMatchResult,
    TemplatePlaceholder,
)
from .validation import (
    CompositionStrategy,
    ConversationTurn,
    RewriteResult,
    SQLValidationError,
    ValidationErrorType,
    ValidationMetadata,
    ValidationResult,
)

__all__ = [
    # Classification
    "QueryIntent",
    "INTENT_DESCRIPTIONS",
    "Question",
    "ClassificationResult",
    "ClassificationOptions",
    # Templates
    "TemplatePlaceholder",
    "QueryTemplate",
    "TemplateCandidate",
    "TemplateMatchResult",
    # Semantic context
    "FieldBinding",
    "TermBinding",
    "JoinPath",
    "TimeRange",
    "FilterSpec",
    "SemanticContext",
    "FilterMetrics",
    # Validation and composition
    "ValidationErrorType",
    "SQLValidationError",
    "ValidationMetadata",
    "ValidationResult",
    "CompositionStrategy",
    "ConversationTurn",
    "RewriteResult",
    # Generation
    "ClarificationOption",
    "ClarificationQuestion",
    "GeneratedSql",
    # Funnel
    "SubQuestionStatus",
    "FunnelStatus",
    "SubQuestionResult",
    "SubQuestion",
    "QueryFunnel",
    "DecomposedStep",
    "Decomposition",
    # Orchestration
    "ThinkingStep",
    "ComplexityAnalysis",
    "TemplateOutcome",
    "DirectOutcome",
    "FunnelOutcome",
    "ClarificationOutcome",
    "ErrorOutcome",
    "OrchestrationResult",
    # Refinement
    "SqlModification",
    "RefinementPlan",
    "RefinementResult",
]
