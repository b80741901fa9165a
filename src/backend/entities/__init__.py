"""
Entities package.

Each subdirectory is one component of the insight core:
- intent_classifier/: Pattern + model intent classification
- template_matcher/: Template ranking and placeholder binding
- query_validator/: Structural SQL validation and composition
- query_builder/: Model-based SQL generation
- funnel/: Decomposition of compound questions into sub-questions
- orchestrator/: Three-mode routing (template, direct, funnel)
- refinement/: Conversational refinement of generated SQL
- workflow/: Client construction and component wiring

Shared models live in the top-level ``models`` package.
"""
