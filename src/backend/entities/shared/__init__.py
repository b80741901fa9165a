"""Shared utilities for the insight core."""

from .audit import AuditDispatcher

__all__ = ["AuditDispatcher"]
