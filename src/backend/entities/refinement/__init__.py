"""Conversational refinement of generated SQL."""

from .edits import add_columns, add_filter, apply_modification, change_limit, change_timerange
from .refiner import Refiner

__all__ = [
    "Refiner",
    "add_columns",
    "add_filter",
    "apply_modification",
    "change_limit",
    "change_timerange",
]
