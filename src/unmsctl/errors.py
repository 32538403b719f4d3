"""Exception hierarchy shared by maintenance components.

Every failure surfaced to the operator derives from :class:`UnmsctlError`.
Where a corrective command is known it is carried in ``remediation`` so the
CLI can print it next to the message.
"""
from __future__ import annotations


class UnmsctlError(RuntimeError):
    """Base class for maintenance failures."""

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        """Store *message* and an optional corrective command."""
        super().__init__(message)
        self.remediation = remediation


class ProbeError(UnmsctlError):
    """Raised when the orchestration engine cannot be queried."""


class PreconditionError(UnmsctlError):
    """Raised when a command is invoked in the wrong stack state."""


class WriteError(UnmsctlError):
    """Raised when one of the configuration homes could not be written."""

    def __init__(
        self,
        message: str,
        *,
        failed: str,
        committed: tuple[str, ...] = (),
        remediation: str | None = None,
    ) -> None:
        """Record which home failed and which were already committed."""
        super().__init__(message, remediation=remediation)
        self.failed = failed
        self.committed = committed


class ParseError(UnmsctlError):
    """Raised when an expected field is absent from the settings document."""


class NotFoundError(UnmsctlError):
    """Raised when a requested key or entry does not exist."""


class ConsistencyError(UnmsctlError):
    """Raised when backup storage violates an invariant."""


class ValidationError(UnmsctlError):
    """Raised when an argument value is rejected before any mutation."""


class CommandError(UnmsctlError):
    """Raised when an external command returns a non-zero exit status."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        remediation: str | None = None,
    ) -> None:
        """Keep the exit status of the failed command for reporting."""
        super().__init__(message, remediation=remediation)
        self.returncode = returncode


__all__ = [
    "CommandError",
    "ConsistencyError",
    "NotFoundError",
    "ParseError",
    "PreconditionError",
    "ProbeError",
    "UnmsctlError",
    "ValidationError",
    "WriteError",
]
