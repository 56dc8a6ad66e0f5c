"""
Auto Mode Errors
================

Exception taxonomy for the feature orchestration engine.

- AlreadyRunningError: duplicate loop start or duplicate run for a feature id
- FeatureNotFoundError: the requested feature id is not in the feature list
- ExecutionNotRegisteredError: a state machine pass ran without a registry entry
- InvalidStatusError: a status outside backlog/in_progress/verified
- AbortError: the delegate stream was cancelled through its token

Usage errors are surfaced immediately to the caller and never retried.
AbortError is an expected outcome and is converted to a non-passing result
by the state machine; it never escapes an entry point.
"""

from __future__ import annotations


class AutoModeError(Exception):
    """Base class for all orchestration engine errors."""


class AlreadyRunningError(AutoModeError):
    """
    Raised when the auto loop is started twice, or when a feature id that is
    already registered is requested again.

    Attributes:
        feature_id: The conflicting feature id, or None for the loop itself
    """

    def __init__(self, feature_id: str | None = None, message: str | None = None):
        self.feature_id = feature_id
        if message is None:
            if feature_id is None:
                message = "Auto mode loop is already running"
            else:
                message = f"Feature {feature_id} is already running"
        super().__init__(message)


class FeatureNotFoundError(AutoModeError):
    """Raised when a feature id is not present in the feature list."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} not found")


class ExecutionNotRegisteredError(AutoModeError):
    """Raised when a state machine pass is invoked for an unregistered id."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} not registered in running executions")


class InvalidStatusError(AutoModeError, ValueError):
    """Raised when a status outside FEATURE_STATUSES is requested."""

    def __init__(self, status: str, valid: tuple[str, ...] | list[str] = ()):
        self.status = status
        message = f"Unknown feature status '{status}'"
        if valid:
            message += f". Valid statuses: {', '.join(valid)}"
        super().__init__(message)


class AbortError(AutoModeError):
    """Raised by a provider stream when its cancellation token fires."""

    def __init__(self, message: str = "Delegate stream aborted"):
        super().__init__(message)


__all__ = [
    "AutoModeError",
    "AlreadyRunningError",
    "FeatureNotFoundError",
    "ExecutionNotRegisteredError",
    "InvalidStatusError",
    "AbortError",
]
