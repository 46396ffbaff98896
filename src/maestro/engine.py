from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from maestro.checkpoints import CheckpointManager, checkpoint_name
from maestro.config import MaestroConfig
from maestro.errors import MaestroError, PhaseTimeoutError
from maestro.executors.base import ExecutorError, PhaseExecutor, PhaseOutput, Reviewer
from maestro.gate import evaluate
from maestro.models import (
    DecisionKind,
    Mode,
    Phase,
    PhaseName,
    PhaseStatus,
    PipelineRun,
    RecoveryDecision,
    RunStatus,
    Severity,
    Task,
    Trigger,
    phases_for_mode,
    utcnow_iso,
)
from maestro.recovery import RecoveryController, build_escalation_report, classify_severity
from maestro.state.artifacts import ArtifactStore, slugify
from maestro.state.store import StateStore
from maestro.state.vcs import NullVersionControl, VersionControl

logger = logging.getLogger(__name__)

EngineEventHook = Callable[[dict[str, Any]], None]


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class _PipelineTimeout(Exception):
    pass


class PipelineEngine:
    """Drives one run through its phases, one at a time.

    Every transition is written to the state store (when one is given) so that
    ``maestro status`` and ``maestro abort`` can observe a run in flight.
    """

    def __init__(
        self,
        executor: PhaseExecutor,
        config: MaestroConfig | None = None,
        *,
        reviewer: Reviewer | None = None,
        store: StateStore | None = None,
        artifacts: ArtifactStore | None = None,
        vcs: VersionControl | None = None,
        event_hook: EngineEventHook | None = None,
    ) -> None:
        self.executor = executor
        self.config = config or MaestroConfig.default()
        self.reviewer = reviewer
        self.store = store
        self.artifacts = artifacts
        self.vcs = vcs or NullVersionControl()
        self.checkpoints = CheckpointManager(self.vcs)
        self.recovery = RecoveryController(self.config.recovery)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _save(self, run: PipelineRun) -> None:
        if self.store is not None:
            self.store.save_run(run)

    def _abort_requested(self, run: PipelineRun) -> bool:
        return self.store is not None and self.store.abort_requested(run.run_id)

    def _needs_checkpoint(self, run: PipelineRun, phase: Phase) -> bool:
        if run.task.mode is Mode.INSTANT:
            return False
        if phase.status is not PhaseStatus.NOT_STARTED:
            return False
        return phase.name.value in self.config.recovery.checkpoint_before

    @staticmethod
    def _input_locator(run: PipelineRun, index: int) -> str | None:
        for previous in reversed(run.phases[:index]):
            if previous.status is PhaseStatus.COMPLETED and previous.output_locator:
                return previous.output_locator
        return None

    async def run_pipeline(
        self,
        task: Task,
        phases: list[Phase] | None = None,
        *,
        run_id: str | None = None,
    ) -> PipelineRun:
        run = PipelineRun(
            run_id=run_id or new_run_id(),
            task=task,
            phases=phases if phases is not None else phases_for_mode(task.mode),
        )
        self._save(run)
        self._emit(
            {
                "event": "run_started",
                "run_id": run.run_id,
                "task": task.to_dict(),
                "phases": [phase.name.value for phase in run.phases],
                "at": run.started_at,
            }
        )
        logger.info(
            "Starting %s (%s, score %d) with phases: %s",
            run.run_id,
            task.mode.value,
            task.score,
            ", ".join(phase.name.value for phase in run.phases),
        )

        try:
            if self.vcs.enabled:
                self.vcs.branch(f"{self.config.vcs.branch_prefix}{slugify(task.description)}")
            await self._drive(run)
            if run.status is RunStatus.PASSED:
                self._finish_success(run)
        except MaestroError as exc:
            logger.error("Run %s stopped: %s", run.run_id, exc)
            run.errors.append(str(exc))
            run.status = RunStatus.FAILED

        run.ended_at = utcnow_iso()
        self._save(run)
        self._emit({"event": "run_finished", "run_id": run.run_id, "run": run.to_dict()})
        logger.info("Run %s finished: %s", run.run_id, run.status.value)
        return run

    async def _drive(self, run: PipelineRun) -> None:
        deadline = time.monotonic() + self.config.timeouts.pipeline_hard_limit_seconds
        index = 0
        while index < len(run.phases):
            phase = run.phases[index]
            if self._abort_requested(run):
                logger.warning("Run %s aborted before %s", run.run_id, phase.name.value)
                run.status = RunStatus.ABORTED
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._pipeline_timeout(run, phase)
                return

            if self._needs_checkpoint(run, phase):
                name = self.checkpoints.unique_name(run, checkpoint_name(run.task, phase.name))
                checkpoint = self.checkpoints.create(run, phase.name, name)
                self._emit(
                    {
                        "event": "checkpoint_created",
                        "run_id": run.run_id,
                        "name": checkpoint.name,
                        "phase": phase.name.value,
                    }
                )

            try:
                decision = await self._attempt(run, phase, index, remaining)
            except _PipelineTimeout:
                self._pipeline_timeout(run, phase)
                return

            run.decisions.append(decision)
            self._emit({"event": "decision", "run_id": run.run_id, **decision.to_dict()})

            if decision.kind is DecisionKind.PROCEED:
                index += 1
                continue

            if decision.kind is DecisionKind.RETRY:
                phase.retry_count += 1
            elif decision.kind is DecisionKind.ROLLBACK:
                index = self._rollback(run, phase)
            else:
                self._escalate(run, phase, decision)
                return
            self._save(run)

        run.status = RunStatus.PASSED

    async def _attempt(
        self,
        run: PipelineRun,
        phase: Phase,
        index: int,
        remaining: float,
    ) -> RecoveryDecision:
        phase.status = PhaseStatus.IN_PROGRESS
        phase.started_at = utcnow_iso()
        phase.ended_at = None
        self._save(run)
        self._emit(
            {
                "event": "phase_started",
                "run_id": run.run_id,
                "phase": phase.name.value,
                "attempt": phase.retry_count + 1,
                "at": phase.started_at,
            }
        )

        limit = self.config.timeouts.hard_limit_for(phase.name)
        budget = min(limit, remaining)
        started = time.monotonic()
        trigger: Trigger
        severity: Severity
        try:
            output = await self._execute_bounded(
                run, phase, self._input_locator(run, index), budget
            )
            grade = await self._grade(output)
        except PhaseTimeoutError as exc:
            if budget < limit:
                raise _PipelineTimeout() from exc
            trigger = Trigger.TIMEOUT
            severity = classify_severity(
                elapsed_seconds=exc.elapsed_seconds,
                limit_seconds=limit,
                config=self.config.severity,
            )
            logger.warning("%s", exc)
            run.errors.append(str(exc))
        except ExecutorError as exc:
            trigger = Trigger.EXECUTOR_ERROR
            severity = Severity.SEVERE if exc.retriable else Severity.CRITICAL
            logger.error("Executor failed in %s: %s", phase.name.value, exc)
            run.errors.append(f"{phase.name.value}: {exc}")
        except Exception as exc:  # noqa: BLE001
            trigger = Trigger.EXECUTOR_ERROR
            severity = Severity.SEVERE
            logger.exception("Unexpected executor failure in %s", phase.name.value)
            run.errors.append(f"{phase.name.value}: {type(exc).__name__}: {exc}")
        else:
            phase.output_locator = output.output_locator
            result = evaluate(grade, self.config.gate.threshold, phase=phase.name)
            phase.grade = result.grade
            phase.grade_history.append(result.grade)
            if result.anomalous:
                logger.warning(
                    "Grade %s for %s was outside 0-100 and was clamped to %d",
                    result.raw_grade,
                    phase.name.value,
                    result.grade,
                )
            passed = result.passed and not output.build_broken
            self._write_grade(output, phase.name, result.grade, passed)
            if passed:
                self._finish_phase(run, phase, PhaseStatus.COMPLETED, started)
                return self.recovery.proceed(phase, result)
            trigger = Trigger.GATE_FAILURE
            severity = classify_severity(
                grade=result.grade, build_broken=output.build_broken, config=self.config.severity
            )

        self._finish_phase(run, phase, PhaseStatus.FAILED, started)
        return self.recovery.decide(
            phase,
            trigger,
            severity,
            max_retries=self.config.retries.for_phase(phase.name),
            checkpoint_available=self.checkpoints.active(run) is not None,
            rollbacks=run.rollbacks.get(phase.name.value, 0),
        )

    async def _execute_bounded(
        self,
        run: PipelineRun,
        phase: Phase,
        input_locator: str | None,
        budget: float,
    ) -> PhaseOutput:
        warning = self.config.timeouts.warning_for(phase.name)
        started = time.monotonic()
        pending = asyncio.ensure_future(self.executor.execute(phase.name, input_locator))
        try:
            if warning < budget:
                done, _ = await asyncio.wait({pending}, timeout=warning)
                if not done:
                    logger.warning(
                        "%s passed its %gs warning threshold", phase.name.value, warning
                    )
                    self._emit(
                        {
                            "event": "phase_warning",
                            "run_id": run.run_id,
                            "phase": phase.name.value,
                            "warning_seconds": warning,
                        }
                    )
            left = max(budget - (time.monotonic() - started), 0.0)
            try:
                return await asyncio.wait_for(pending, timeout=left)
            except asyncio.TimeoutError as exc:
                raise PhaseTimeoutError(
                    f"{phase.name.value} exceeded its {budget:g}s limit.",
                    phase=phase.name.value,
                    elapsed_seconds=time.monotonic() - started,
                    limit_seconds=budget,
                ) from exc
        finally:
            if not pending.done():
                pending.cancel()

    async def _grade(self, output: PhaseOutput) -> int:
        if output.grade is not None:
            return output.grade
        if self.reviewer is None:
            raise ExecutorError(
                "Phase output carried no grade and no reviewer is configured.",
                executor="reviewer",
                retriable=False,
            )
        return await self.reviewer.review(output.output_locator)

    def _write_grade(self, output: PhaseOutput, name: PhaseName, grade: int, passed: bool) -> None:
        if self.artifacts is None:
            return
        if not Path(output.output_locator).parent.is_dir():
            return
        self.artifacts.write_grade(output.output_locator, name, grade, passed=passed)

    def _finish_phase(
        self, run: PipelineRun, phase: Phase, status: PhaseStatus, started: float
    ) -> None:
        phase.status = status
        phase.ended_at = utcnow_iso()
        self._save(run)
        self._emit(
            {
                "event": "phase_finished",
                "run_id": run.run_id,
                "phase": phase.name.value,
                "status": status.value,
                "grade": phase.grade if phase.grade_history else None,
                "retry_count": phase.retry_count,
                "started_at": phase.started_at,
                "ended_at": phase.ended_at,
                "duration_seconds": round(time.monotonic() - started, 3),
            }
        )

    def _rollback(self, run: PipelineRun, phase: Phase) -> int:
        active = self.checkpoints.active(run)
        if active is None:
            raise MaestroError("Rollback chosen without an active checkpoint.")
        restored = self.checkpoints.restore(run, active.name)
        # A new checkpoint is taken when the target phase starts again.
        self.checkpoints.discard(run, active.name)
        target = run.phase_index(restored.target_phase)
        for later in run.phases[target:]:
            later.status = PhaseStatus.NOT_STARTED
            later.ended_at = None
        phase.retry_count = 0
        run.rollbacks[phase.name.value] = run.rollbacks.get(phase.name.value, 0) + 1
        self._emit(
            {
                "event": "rollback",
                "run_id": run.run_id,
                "checkpoint": restored.checkpoint,
                "phase": phase.name.value,
                "resume_at": restored.target_phase.value,
            }
        )
        return target

    def _escalate(self, run: PipelineRun, phase: Phase | None, decision: RecoveryDecision) -> None:
        run.status = RunStatus.ESCALATED
        run.escalation = build_escalation_report(run, phase, decision)
        logger.error(
            "Run %s escalated at %s: %s",
            run.run_id,
            phase.name.value if phase else "pipeline",
            decision.reason,
        )

    def _pipeline_timeout(self, run: PipelineRun, phase: Phase) -> None:
        limit = self.config.timeouts.pipeline_hard_limit_seconds
        try:
            name = self.checkpoints.unique_name(
                run, f"emergency-{checkpoint_name(run.task, phase.name)}"
            )
            self.checkpoints.create(run, phase.name, name)
        except MaestroError as exc:
            logger.error("Emergency checkpoint failed for %s: %s", run.run_id, exc)
            run.errors.append(f"emergency checkpoint failed: {exc}")
        phase.status = PhaseStatus.FAILED
        phase.ended_at = utcnow_iso()
        decision = RecoveryDecision(
            kind=DecisionKind.ESCALATE,
            reason=f"pipeline exceeded its {limit:g}s hard limit.",
            phase=phase.name,
            trigger=Trigger.TIMEOUT,
            severity=Severity.CRITICAL,
        )
        run.decisions.append(decision)
        run.errors.append(decision.reason)
        self._emit({"event": "decision", "run_id": run.run_id, **decision.to_dict()})
        self._escalate(run, phase, decision)

    def _finish_success(self, run: PipelineRun) -> None:
        self.checkpoints.discard_all(run)
        if not self.vcs.enabled:
            return
        commit = self.vcs.commit(f"maestro: {run.task.description}")
        if commit and self.config.vcs.push:
            self.vcs.push()
