"""Query Builder package for model-based SQL generation."""

from .builder import ModelSqlGenerator
from .prompts import build_generation_prompt, parse_generation_response

__all__ = ["ModelSqlGenerator", "build_generation_prompt", "parse_generation_response"]
