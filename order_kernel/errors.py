"""
Error taxonomy for the service order kernel.

GuardViolation, ValidationError and ConflictError describe rejected commands.
Commands report them as rejected CommandResults carrying the authoritative
order snapshot; `CommandResult.raise_for_error()` turns them into these
exceptions for callers that prefer raising. ConfigurationError is fatal at
construction / config-load time. NotFoundError covers unknown identifiers.
"""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    GUARD_VIOLATION = "guard_violation"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class KernelError(Exception):
    """Base class for every kernel error. `reason` is safe to display."""

    kind: Optional[ErrorKind] = None

    def __init__(self, reason: str, order: Optional[Any] = None):
        super().__init__(reason)
        self.reason = reason
        self.order = order


class GuardViolation(KernelError):
    """A transition was attempted whose precondition does not hold."""

    kind = ErrorKind.GUARD_VIOLATION


class ValidationError(KernelError):
    """A command carried malformed input."""

    kind = ErrorKind.VALIDATION


class ConflictError(KernelError):
    """The command raced with, or arrived after, a competing resolution."""

    kind = ErrorKind.CONFLICT


class NotFoundError(KernelError):
    """Unknown order, offer or work completion form."""

    kind = ErrorKind.NOT_FOUND


class ConfigurationError(KernelError):
    """Invalid configuration. Never silently corrected."""


_BY_KIND = {
    ErrorKind.GUARD_VIOLATION: GuardViolation,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.NOT_FOUND: NotFoundError,
}


def error_for_kind(kind: ErrorKind, reason: str, order: Optional[Any] = None) -> KernelError:
    """Build the exception matching a rejection kind."""
    return _BY_KIND[kind](reason, order)
