# errors.py
"""
Exception taxonomy for cimatrix.

Configuration errors (ConfigError and its subclasses) are fatal and are
raised before any job starts. StepInvocationError is contained to the job
that raised it and is recorded as a failed step. SkipHistoryUnavailable is
never fatal: the skip decider degrades to "run the job".
"""
from __future__ import annotations

from typing import List, Optional


class CIMatrixError(Exception):
    """Base exception for cimatrix."""
    pass


class ConfigError(CIMatrixError):
    """
    Pipeline definition could not be loaded or validated.

    `details` holds one line per problem so the CLI can render them
    without a traceback.
    """

    def __init__(self, message: str, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def __str__(self) -> str:
        if not self.details:
            return self.message
        return "\n".join([self.message, *(f"  {d}" for d in self.details)])


class InvalidAxisSet(ConfigError):
    """An axis has no variants, duplicate variants, or a malformed include."""
    pass


class InvalidExclusionRule(InvalidAxisSet):
    """An exclusion rule is empty or references an axis that does not exist."""
    pass


class StepInvocationError(CIMatrixError):
    """The task runner (or toolchain provisioner) could not run the invocation at all."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        if self.exit_code is None:
            return self.message
        return f"{self.message} (exit={self.exit_code})"


class SkipHistoryUnavailable(CIMatrixError):
    """History store could not be read or written."""
    pass


class IllegalTransition(CIMatrixError):
    """A JobRunner was asked to move between states that are not connected."""
    pass
