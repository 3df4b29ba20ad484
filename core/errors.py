"""
Pipeline error hierarchy.

``retryable`` tells the queue layer whether redelivery can help: transient
external failures are retried up to the dead-letter limit, malformed input is
dead-lettered immediately.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class MalformedInputError(PipelineError):
    """Bad job name, missing channel, unknown queue action."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class SubOperationError(PipelineError):
    """One or more concurrent sub-operations of a single event failed."""

    def __init__(self, context: str, errors: dict[str, BaseException]):
        self.context = context
        self.errors = errors
        names = ", ".join(sorted(errors))
        super().__init__(f"{context}: failed sub-operations [{names}]", retryable=True)


class ConfigurationError(PipelineError):
    def __init__(self, message: str):
        super().__init__(message, retryable=False)
