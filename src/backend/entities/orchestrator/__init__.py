"""Three-mode orchestration: template, direct generation and funnel."""

from .clarification import apply_clarifications, intent_clarification, term_clarifications
from .complexity import analyze_complexity
from .orchestrator import ThreeModeOrchestrator, next_sub_question

__all__ = [
    "ThreeModeOrchestrator",
    "analyze_complexity",
    "apply_clarifications",
    "intent_clarification",
    "next_sub_question",
    "term_clarifications",
]
