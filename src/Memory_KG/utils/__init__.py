"""Shared utilities for the pipeline core."""

from .errors import FoundationError, ProblemDetail


__all__ = ["FoundationError", "ProblemDetail"]
