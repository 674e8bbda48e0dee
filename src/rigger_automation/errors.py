from __future__ import annotations

from typing import Optional


class RiggerError(Exception):
    """Base class for engine errors."""


class HostUnreachable(RiggerError):
    """The transport to a host could not be established."""

    def __init__(self, host: str, reason: str = ""):
        message = f"host '{host}' is unreachable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.host = host
        self.reason = reason


class CheckFailed(RiggerError):
    """Current state of a resource could not be determined."""


class ActionFailed(RiggerError):
    """A corrective action ran but did not succeed."""


class GuardEvaluationError(RiggerError):
    """Raised for malformed guards or references to undefined names."""

    def __init__(self, message: str, expression: Optional[str] = None, column: Optional[int] = None):
        super().__init__(message)
        self.expression = expression
        self.column = column


class PlanValidationError(RiggerError, ValueError):
    """Raised when a plan, inventory or vault file cannot be loaded."""

    def __init__(self, message: str, path: Optional[str] = None, line: Optional[int] = None):
        super().__init__(message)
        self.path = path
        self.line = line
