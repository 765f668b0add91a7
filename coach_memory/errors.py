"""
Coach Memory Error Taxonomy
===========================

Only ValidationError is meant to reach the caller of event ingestion.
Everything else is converted to a safe default at the service boundary.
"""


class CoachMemoryError(Exception):
    """Base class for learning-subsystem errors."""


class PersistenceError(CoachMemoryError):
    """Underlying relational store is unreachable or rejected the operation."""


class AggregationSkipped(CoachMemoryError):
    """Not enough events in the window to learn anything."""


class LLMUnavailable(CoachMemoryError):
    """Completion service timed out, errored or returned an unusable shape."""


class ValidationError(CoachMemoryError):
    """Malformed behavior event."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field
