from __future__ import annotations


class MaestroError(RuntimeError):
    """Base class for orchestration errors."""


class ValidationError(MaestroError):
    """Raised when classifier or plan input is malformed."""


class GateFailure(MaestroError):
    """Raised when a phase grade falls below the gate threshold."""

    def __init__(self, message: str, *, phase: str | None = None, grade: int | None = None) -> None:
        super().__init__(message)
        self.phase = phase
        self.grade = grade


class PhaseTimeoutError(MaestroError):
    """Raised when a phase or the whole pipeline exceeds its hard limit."""

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        elapsed_seconds: float = 0.0,
        limit_seconds: float = 0.0,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.elapsed_seconds = elapsed_seconds
        self.limit_seconds = limit_seconds


class CheckpointNotFoundError(MaestroError):
    """Raised when no undiscarded checkpoint carries the requested name."""


class DuplicateCheckpointNameError(MaestroError):
    """Raised when an undiscarded checkpoint already uses the requested name."""


class RetryLimitExceeded(MaestroError):
    """Raised by callers that need an exception for an exhausted retry budget."""


class EscalationRequired(MaestroError):
    """Raised by callers that need an exception for an escalated run."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class StateError(MaestroError):
    """Raised when persisted state operations fail."""


class VersionControlError(MaestroError):
    """Raised when a version-control operation fails."""
