from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from maestro.errors import MaestroError
from maestro.models import PhaseName


class ExecutorError(MaestroError):
    """Raised when a phase executor or reviewer fails."""

    def __init__(
        self,
        message: str,
        *,
        executor: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.executor = executor
        self.exit_code = exit_code
        self.retriable = retriable


class ExecutorProcessError(ExecutorError):
    """Raised when an executor process cannot be started or exits abnormally."""


@dataclass(slots=True)
class PhaseOutput:
    output_locator: str
    grade: int | None = None
    build_broken: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


class PhaseExecutor(ABC):
    @abstractmethod
    async def execute(self, phase_name: PhaseName, input_locator: str | None) -> PhaseOutput:
        """Run one phase and return the locator of its output, optionally self-graded."""


class Reviewer(ABC):
    @abstractmethod
    async def review(self, output_locator: str) -> int:
        """Grade a phase output on a 0-100 scale."""
