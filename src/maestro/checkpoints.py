from __future__ import annotations

import logging
from datetime import UTC, datetime

from maestro.errors import CheckpointNotFoundError, DuplicateCheckpointNameError
from maestro.models import Checkpoint, PhaseName, PipelineRun, RestoreResult, Task
from maestro.state.artifacts import slugify
from maestro.state.vcs import NullVersionControl, VersionControl

logger = logging.getLogger(__name__)


def checkpoint_name(task: Task, phase: PhaseName, *, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d-%H%M%S")
    return (
        f"pipeline-checkpoint-{stamp}-{phase.value.replace('_', '-')}-"
        f"{slugify(task.description, max_length=30)}"
    )


class CheckpointManager:
    """Named recovery points owned by a single run.

    Only the record on ``run.checkpoints`` is touched here; phase state is left for
    the engine to reset after a restore. When a version-control collaborator is
    enabled, ``create`` stashes a snapshot, ``restore`` returns the tree to it and
    discarding drops it.
    """

    def __init__(self, vcs: VersionControl | None = None) -> None:
        self.vcs = vcs or NullVersionControl()

    @staticmethod
    def _find(run: PipelineRun, name: str) -> Checkpoint | None:
        for checkpoint in reversed(run.checkpoints):
            if checkpoint.name == name and not checkpoint.discarded:
                return checkpoint
        return None

    def unique_name(self, run: PipelineRun, base: str) -> str:
        """Return ``base``, or ``base-2``, ``base-3`` ... when a live checkpoint holds it."""
        candidate = base
        suffix = 2
        while self._find(run, candidate) is not None:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def create(self, run: PipelineRun, phase_name: PhaseName, name: str) -> Checkpoint:
        if self._find(run, name) is not None:
            raise DuplicateCheckpointNameError(
                f"Checkpoint '{name}' already exists for run {run.run_id}."
            )
        snapshot_ref = None
        if self.vcs.enabled:
            snapshot_ref = self.vcs.stash(f"{name} ({phase_name.value})")
        checkpoint = Checkpoint(name=name, phase=phase_name, snapshot_ref=snapshot_ref)
        run.checkpoints.append(checkpoint)
        logger.info("Created checkpoint %s before %s", name, phase_name.value)
        return checkpoint

    def list(self, run: PipelineRun) -> list[Checkpoint]:
        return list(run.checkpoints)

    def active(self, run: PipelineRun) -> Checkpoint | None:
        for checkpoint in reversed(run.checkpoints):
            if not checkpoint.discarded:
                return checkpoint
        return None

    def restore(self, run: PipelineRun, name: str) -> RestoreResult:
        checkpoint = self._find(run, name)
        if checkpoint is None:
            raise CheckpointNotFoundError(f"No active checkpoint '{name}' for run {run.run_id}.")
        if self.vcs.enabled and checkpoint.snapshot_ref:
            self.vcs.restore(checkpoint.snapshot_ref)
        logger.info("Restored checkpoint %s; resuming at %s", name, checkpoint.phase.value)
        return RestoreResult(checkpoint=checkpoint.name, target_phase=checkpoint.phase)

    def _release(self, checkpoint: Checkpoint) -> None:
        checkpoint.discarded = True
        if self.vcs.enabled and checkpoint.snapshot_ref:
            self.vcs.drop(checkpoint.snapshot_ref)

    def discard(self, run: PipelineRun, name: str) -> None:
        checkpoint = self._find(run, name)
        if checkpoint is None:
            logger.info("Checkpoint %s not active for run %s; nothing to discard", name, run.run_id)
            return
        self._release(checkpoint)
        logger.info("Discarded checkpoint %s", name)

    def discard_all(self, run: PipelineRun) -> int:
        discarded = 0
        for checkpoint in run.checkpoints:
            if not checkpoint.discarded:
                self._release(checkpoint)
                discarded += 1
        if discarded:
            logger.info("Discarded %d checkpoint(s) for run %s", discarded, run.run_id)
        return discarded
