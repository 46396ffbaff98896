from maestro.executors.base import (
    ExecutorError,
    ExecutorProcessError,
    PhaseExecutor,
    PhaseOutput,
    Reviewer,
)
from maestro.executors.command import CommandPhaseExecutor, CommandReviewer

__all__ = [
    "CommandPhaseExecutor",
    "CommandReviewer",
    "ExecutorError",
    "ExecutorProcessError",
    "PhaseExecutor",
    "PhaseOutput",
    "Reviewer",
]
