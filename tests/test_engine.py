import asyncio
from pathlib import Path
from typing import Any

import pytest

from maestro.classifier import Indicator, ScopeIndicators, build_task
from maestro.config import MaestroConfig
from maestro.engine import PipelineEngine
from maestro.errors import EscalationRequired, MaestroError
from maestro.executors.base import ExecutorError, PhaseExecutor, PhaseOutput, Reviewer
from maestro.models import (
    DecisionKind,
    Mode,
    PhaseName,
    PhaseStatus,
    RunStatus,
    Severity,
    Task,
    Trigger,
)
from maestro.state import ArtifactStore, NullVersionControl, StateStore


class ScriptedExecutor(PhaseExecutor):
    def __init__(self, grades: dict[PhaseName, list[Any]] | None = None, default: int = 90) -> None:
        self.grades = {name: list(values) for name, values in (grades or {}).items()}
        self.default = default
        self.calls: list[tuple[PhaseName, str | None]] = []

    async def execute(self, phase_name: PhaseName, input_locator: str | None) -> PhaseOutput:
        self.calls.append((phase_name, input_locator))
        queue = self.grades.get(phase_name)
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, PhaseOutput):
            return outcome
        return PhaseOutput(
            output_locator=f"memory://{phase_name.value}/{len(self.calls)}", grade=outcome
        )

    def calls_for(self, phase_name: PhaseName) -> int:
        return sum(1 for name, _ in self.calls if name == phase_name)


class SleepingExecutor(PhaseExecutor):
    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self.calls = 0

    async def execute(self, phase_name: PhaseName, input_locator: str | None) -> PhaseOutput:
        self.calls += 1
        await asyncio.sleep(self.seconds)
        return PhaseOutput(output_locator="memory://slow", grade=95)


class FixedReviewer(Reviewer):
    def __init__(self, grade: int) -> None:
        self.grade = grade
        self.reviewed: list[str] = []

    async def review(self, output_locator: str) -> int:
        self.reviewed.append(output_locator)
        return self.grade


class RecordingVersionControl(NullVersionControl):
    def __init__(self) -> None:
        self.operations: list[tuple[str, str]] = []

    @property
    def enabled(self) -> bool:
        return True

    def branch(self, name: str) -> str:
        self.operations.append(("branch", name))
        return name

    def commit(self, message: str) -> str | None:
        self.operations.append(("commit", message))
        return "abc123"

    def push(self) -> None:
        self.operations.append(("push", ""))

    def stash(self, message: str) -> str | None:
        self.operations.append(("stash", message))
        return "stash-ref"

    def restore(self, ref: str | None) -> None:
        self.operations.append(("restore", ref or ""))

    def drop(self, ref: str | None) -> None:
        self.operations.append(("drop", ref or ""))


def _full_task() -> Task:
    indicators = ScopeIndicators.of(
        Indicator.MANY_FILES, Indicator.UNKNOWN_LOCATION, Indicator.SHARED_MODULE,
        Indicator.NEW_PATTERN,
    )
    task = build_task("Rework session handling", indicators)
    assert (task.score, task.mode) == (6, Mode.FULL)
    return task


def _instant_task() -> Task:
    return build_task("Fix typo", ScopeIndicators.of(exact_instructions=True))


def _config(**timeouts: float) -> MaestroConfig:
    config = MaestroConfig.default()
    for key, value in timeouts.items():
        setattr(config.timeouts, key, value)
    return config


def test_instant_task_runs_single_phase_without_checkpoint() -> None:
    executor = ScriptedExecutor()
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert [phase.name for phase in run.phases] == [PhaseName.IMPLEMENTATION]
    assert len(executor.calls) == 1
    assert run.checkpoints == []
    assert run.status is RunStatus.PASSED
    assert run.phases[0].status is PhaseStatus.COMPLETED
    run.raise_for_status()


def test_gate_failures_retry_until_pass() -> None:
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [65, 68, 85]})
    events: list[dict[str, Any]] = []
    engine = PipelineEngine(executor, event_hook=events.append)

    run = asyncio.run(engine.run_pipeline(_full_task()))

    implementation = run.phase(PhaseName.IMPLEMENTATION)
    retry_counts = [
        event["retry_count"]
        for event in events
        if event["event"] == "phase_finished" and event["phase"] == "implementation"
    ]
    assert retry_counts == [0, 1, 2]
    assert implementation.retry_count == 2
    assert implementation.status is PhaseStatus.COMPLETED
    assert implementation.grade_history == [65, 68, 85]
    assert run.status is RunStatus.PASSED
    assert len(run.decisions_of(DecisionKind.RETRY)) == 2
    assert run.decisions_of(DecisionKind.ROLLBACK) == []
    assert run.decisions_of(DecisionKind.ESCALATE) == []


def test_exhausted_retries_without_checkpoint_escalate() -> None:
    config = MaestroConfig.default()
    config.recovery.checkpoint_before = []
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [55, 55, 55]})
    engine = PipelineEngine(executor, config)

    run = asyncio.run(engine.run_pipeline(_full_task()))

    assert run.status is RunStatus.ESCALATED
    assert executor.calls_for(PhaseName.IMPLEMENTATION) == 3
    assert executor.calls_for(PhaseName.VALIDATION) == 0
    assert run.phase(PhaseName.IMPLEMENTATION).status is PhaseStatus.FAILED
    assert run.phase(PhaseName.VALIDATION).status is PhaseStatus.NOT_STARTED
    assert run.decisions[-1].kind is DecisionKind.ESCALATE
    assert run.escalation is not None
    assert run.escalation.failing_phase is PhaseName.IMPLEMENTATION
    assert run.escalation.retry_history == [55, 55, 55]
    with pytest.raises(EscalationRequired) as excinfo:
        run.raise_for_status()
    assert excinfo.value.run_id == run.run_id


def test_severe_failure_rolls_back_to_checkpoint_and_resumes() -> None:
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [50, 90]})
    events: list[dict[str, Any]] = []
    engine = PipelineEngine(executor, event_hook=events.append)

    run = asyncio.run(engine.run_pipeline(_full_task()))

    implementation = run.phase(PhaseName.IMPLEMENTATION)
    recoveries = [d.kind for d in run.decisions if d.kind is not DecisionKind.PROCEED]
    assert recoveries == [DecisionKind.ROLLBACK]
    assert len(run.decisions_of(DecisionKind.PROCEED)) == len(run.phases)
    assert implementation.retry_count == 0
    assert implementation.status is PhaseStatus.COMPLETED
    assert run.rollbacks == {"implementation": 1}
    assert run.status is RunStatus.PASSED
    assert all(checkpoint.discarded for checkpoint in run.checkpoints)
    assert all(checkpoint.phase is PhaseName.IMPLEMENTATION for checkpoint in run.checkpoints)

    order = [event["event"] for event in events]
    first_checkpoint = order.index("checkpoint_created")
    first_start = next(
        index
        for index, event in enumerate(events)
        if event["event"] == "phase_started" and event["phase"] == "implementation"
    )
    assert first_checkpoint < first_start
    assert "rollback" in order


def test_repeated_rollbacks_end_in_escalation() -> None:
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [10] * 20})
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_full_task()))

    assert run.status is RunStatus.ESCALATED
    assert run.rollbacks == {"implementation": 2}
    assert executor.calls_for(PhaseName.IMPLEMENTATION) == 3


def test_retry_count_never_exceeds_limit_and_run_terminates() -> None:
    config = MaestroConfig.default()
    config.recovery.checkpoint_before = []
    executor = ScriptedExecutor(default=75)
    engine = PipelineEngine(executor, config)
    task = _full_task()

    run = asyncio.run(engine.run_pipeline(task))

    max_retries = config.retries.for_phase(PhaseName.RESEARCH)
    assert run.status is RunStatus.ESCALATED
    assert run.phases[0].retry_count <= max_retries
    assert executor.calls_for(PhaseName.RESEARCH) == max_retries
    bound = sum(config.retries.for_phase(phase.name) for phase in run.phases) + len(run.phases)
    assert len(executor.calls) <= bound


def test_input_locator_is_previous_phase_output() -> None:
    executor = ScriptedExecutor()
    engine = PipelineEngine(executor)
    task = build_task("Add endpoint", ScopeIndicators.of(Indicator.FEW_FILES))

    run = asyncio.run(engine.run_pipeline(task))

    assert run.status is RunStatus.PASSED
    assert executor.calls[0] == (PhaseName.PLANNING, None)
    assert executor.calls[1] == (PhaseName.IMPLEMENTATION, "memory://planning/1")


def test_reviewer_grades_when_executor_does_not() -> None:
    executor = ScriptedExecutor(
        {PhaseName.IMPLEMENTATION: [PhaseOutput(output_locator="memory://impl")]}
    )
    reviewer = FixedReviewer(88)
    engine = PipelineEngine(executor, reviewer=reviewer)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.PASSED
    assert reviewer.reviewed == ["memory://impl"]
    assert run.phases[0].grade == 88


def test_missing_grade_without_reviewer_escalates() -> None:
    executor = ScriptedExecutor(
        {PhaseName.IMPLEMENTATION: [PhaseOutput(output_locator="memory://impl")]}
    )
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.ESCALATED
    assert run.decisions[-1].severity is Severity.CRITICAL


def test_executor_crash_is_treated_as_severe() -> None:
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [RuntimeError("boom"), 92]})
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.PASSED
    first = run.decisions[0]
    assert first.kind is DecisionKind.RETRY
    assert first.trigger is Trigger.EXECUTOR_ERROR
    assert first.severity is Severity.SEVERE
    assert any("RuntimeError" in error for error in run.errors)


def test_non_retriable_executor_error_escalates() -> None:
    failure = ExecutorError("no command", executor="command", retriable=False)
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [failure]})
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.ESCALATED
    assert len(executor.calls) == 1


def test_build_broken_escalates_even_with_good_grade() -> None:
    broken = PhaseOutput(output_locator="memory://impl", grade=95, build_broken=True)
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [broken]})
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.ESCALATED
    assert run.escalation is not None
    assert run.escalation.severity is Severity.CRITICAL


def test_out_of_range_grade_is_clamped() -> None:
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [150]})
    engine = PipelineEngine(executor)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.PASSED
    assert run.phases[0].grade == 100


def test_phase_hard_limit_triggers_timeout_recovery() -> None:
    config = MaestroConfig.default()
    config.timeouts.warning_seconds["implementation"] = 0.05
    config.timeouts.hard_limit_seconds["implementation"] = 0.3
    config.retries.max_retries["implementation"] = 2
    executor = SleepingExecutor(5.0)
    events: list[dict[str, Any]] = []
    engine = PipelineEngine(executor, config, event_hook=events.append)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.ESCALATED
    assert executor.calls == 2
    assert all(decision.trigger is Trigger.TIMEOUT for decision in run.decisions)
    assert [decision.kind for decision in run.decisions] == [
        DecisionKind.RETRY,
        DecisionKind.ESCALATE,
    ]
    assert any(event["event"] == "phase_warning" for event in events)


def test_pipeline_hard_limit_escalates_with_emergency_checkpoint() -> None:
    config = _config(pipeline_hard_limit_seconds=0.05)
    executor = SleepingExecutor(5.0)
    engine = PipelineEngine(executor, config)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert run.status is RunStatus.ESCALATED
    assert run.decisions[-1].trigger is Trigger.TIMEOUT
    assert run.decisions[-1].severity is Severity.CRITICAL
    assert any(checkpoint.name.startswith("emergency-") for checkpoint in run.checkpoints)


def test_abort_request_halts_before_next_phase(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")

    statuses_seen: list[RunStatus] = []

    class AbortingExecutor(ScriptedExecutor):
        async def execute(self, phase_name: PhaseName, input_locator: str | None) -> PhaseOutput:
            store.request_abort("run-abort")
            statuses_seen.append(store.load_run("run-abort").status)
            return await super().execute(phase_name, input_locator)

    executor = AbortingExecutor()
    engine = PipelineEngine(executor, store=store)
    task = build_task("Add endpoint", ScopeIndicators.of(Indicator.FEW_FILES))

    run = asyncio.run(engine.run_pipeline(task, run_id="run-abort"))

    assert run.status is RunStatus.ABORTED
    assert [name for name, _ in executor.calls] == [PhaseName.PLANNING]
    assert statuses_seen == [RunStatus.RUNNING]
    stored = store.load_run("run-abort")
    assert stored is not None
    assert stored.status is RunStatus.ABORTED


def test_run_is_persisted_and_grades_written(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    artifacts = ArtifactStore(tmp_path / "artifacts")
    locator = artifacts.artifact_path(PhaseName.IMPLEMENTATION, "fix typo")
    locator.write_text("done\n", encoding="utf-8")
    executor = ScriptedExecutor(
        {PhaseName.IMPLEMENTATION: [PhaseOutput(output_locator=str(locator), grade=91)]}
    )
    engine = PipelineEngine(executor, store=store, artifacts=artifacts)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    stored = store.load_run(run.run_id)
    assert stored is not None
    assert stored.status is RunStatus.PASSED
    assert stored.phases[0].output_locator == str(locator)
    grade_file = ArtifactStore.grade_path(str(locator))
    assert "APPROVED" in grade_file.read_text(encoding="utf-8")


def test_version_control_used_at_pipeline_boundaries() -> None:
    config = MaestroConfig.default()
    config.vcs.push = True
    vcs = RecordingVersionControl()
    engine = PipelineEngine(ScriptedExecutor(), config, vcs=vcs)
    task = build_task("Add endpoint", ScopeIndicators.of(Indicator.FEW_FILES))

    run = asyncio.run(engine.run_pipeline(task))

    kinds = [operation for operation, _ in vcs.operations]
    assert run.status is RunStatus.PASSED
    assert kinds[0] == "branch"
    assert vcs.operations[0][1] == "maestro/add-endpoint"
    assert "stash" in kinds
    assert kinds[-2:] == ["commit", "push"]


def test_passing_gate_records_proceed_decision() -> None:
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [72, 91]})
    events: list[dict[str, Any]] = []
    engine = PipelineEngine(executor, event_hook=events.append)

    run = asyncio.run(engine.run_pipeline(_instant_task()))

    assert [decision.kind for decision in run.decisions] == [
        DecisionKind.RETRY,
        DecisionKind.PROCEED,
    ]
    proceed = run.decisions[-1]
    assert proceed.phase is PhaseName.IMPLEMENTATION
    assert proceed.trigger is None
    assert "91" in proceed.reason
    kinds = [event["kind"] for event in events if event["event"] == "decision"]
    assert kinds == ["retry", "proceed"]


def test_checkpoints_before_several_phases_get_distinct_names() -> None:
    config = MaestroConfig.default()
    config.recovery.checkpoint_before = ["planning", "implementation"]
    engine = PipelineEngine(ScriptedExecutor(), config)
    task = build_task("Add endpoint", ScopeIndicators.of(Indicator.FEW_FILES))

    run = asyncio.run(engine.run_pipeline(task))

    assert run.status is RunStatus.PASSED
    names = [checkpoint.name for checkpoint in run.checkpoints]
    assert len(names) == len(set(names)) == 2
    assert [checkpoint.phase for checkpoint in run.checkpoints] == [
        PhaseName.PLANNING,
        PhaseName.IMPLEMENTATION,
    ]
    assert "-planning-" in names[0]
    assert "-implementation-" in names[1]


def test_checkpoint_failure_ends_run_as_failed(tmp_path: Path) -> None:
    class BrokenSnapshots(RecordingVersionControl):
        def stash(self, message: str) -> str | None:
            raise MaestroError("snapshot storage unavailable")

    store = StateStore(tmp_path / "state")
    engine = PipelineEngine(ScriptedExecutor(), store=store, vcs=BrokenSnapshots())
    task = build_task("Add endpoint", ScopeIndicators.of(Indicator.FEW_FILES))

    run = asyncio.run(engine.run_pipeline(task, run_id="run-broken"))

    assert run.status is RunStatus.FAILED
    assert run.ended_at is not None
    assert "snapshot storage unavailable" in run.errors[-1]
    stored = store.load_run("run-broken")
    assert stored is not None
    assert stored.status is RunStatus.FAILED


def test_snapshots_are_dropped_after_rollback_and_success() -> None:
    vcs = RecordingVersionControl()
    executor = ScriptedExecutor({PhaseName.IMPLEMENTATION: [50, 90]})
    engine = PipelineEngine(executor, vcs=vcs)

    run = asyncio.run(engine.run_pipeline(_full_task()))

    kinds = [operation for operation, _ in vcs.operations]
    assert run.status is RunStatus.PASSED
    assert kinds.count("stash") == 2
    assert kinds.count("drop") == 2
    assert kinds.index("restore") < kinds.index("drop")
    assert kinds.index("drop", kinds.index("drop") + 1) < kinds.index("commit")
