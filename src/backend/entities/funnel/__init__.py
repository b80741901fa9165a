"""Funnel decomposition of compound questions into ordered sub-questions."""

from .engine import FunnelEngine
from .prompts import heuristic_decomposition, parse_decomposition_response
from .state import ALLOWED_TRANSITIONS, can_transition, ensure_transition
from .store import InMemoryFunnelRepository

__all__ = [
    "ALLOWED_TRANSITIONS",
    "FunnelEngine",
    "InMemoryFunnelRepository",
    "can_transition",
    "ensure_transition",
    "heuristic_decomposition",
    "parse_decomposition_response",
]
