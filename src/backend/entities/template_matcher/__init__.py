"""Template Matcher package for scoring catalog templates against questions."""

from .matcher import TemplateMatcher, string_similarity
from .placeholders import PlaceholderBinding, bind_placeholders

__all__ = ["PlaceholderBinding", "TemplateMatcher", "bind_placeholders", "string_similarity"]
