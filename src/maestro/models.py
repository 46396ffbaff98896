from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from maestro.errors import EscalationRequired, MaestroError


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Mode(str, Enum):
    INSTANT = "instant"
    FAST_TRACK = "fast_track"
    FULL = "full"


class PhaseName(str, Enum):
    RESEARCH = "research"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    VALIDATION = "validation"
    POST_MORTEM = "post_mortem"
    DOCUMENTATION = "documentation"


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ESCALATED = "escalated"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class Severity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"
    CRITICAL = "critical"


class Trigger(str, Enum):
    GATE_FAILURE = "gate_failure"
    TIMEOUT = "timeout"
    EXECUTOR_ERROR = "executor_error"


class DecisionKind(str, Enum):
    RETRY = "retry"
    ROLLBACK = "rollback"
    ESCALATE = "escalate"
    PROCEED = "proceed"


MODE_PHASES: dict[Mode, tuple[PhaseName, ...]] = {
    Mode.INSTANT: (PhaseName.IMPLEMENTATION,),
    Mode.FAST_TRACK: (
        PhaseName.PLANNING,
        PhaseName.IMPLEMENTATION,
        PhaseName.VALIDATION,
        PhaseName.POST_MORTEM,
        PhaseName.DOCUMENTATION,
    ),
    Mode.FULL: (
        PhaseName.RESEARCH,
        PhaseName.PLANNING,
        PhaseName.IMPLEMENTATION,
        PhaseName.VALIDATION,
        PhaseName.POST_MORTEM,
        PhaseName.DOCUMENTATION,
    ),
}


def phases_for_mode(mode: Mode) -> list[Phase]:
    return [Phase(name=name) for name in MODE_PHASES[mode]]


@dataclass(slots=True, frozen=True)
class Task:
    id: str
    description: str
    score: int
    mode: Mode

    def rescored(self, score: int, mode: Mode) -> Task:
        return replace(self, score=score, mode=mode)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "score": self.score,
            "mode": self.mode.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            score=int(data.get("score", 0)),
            mode=Mode(data.get("mode", Mode.FAST_TRACK.value)),
        )


@dataclass(slots=True)
class Phase:
    name: PhaseName
    status: PhaseStatus = PhaseStatus.NOT_STARTED
    grade: int | None = None
    retry_count: int = 0
    output_locator: str | None = None
    grade_history: list[int] = field(default_factory=list)
    started_at: str | None = None
    ended_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name.value,
            "status": self.status.value,
            "grade": self.grade,
            "retry_count": self.retry_count,
            "output_locator": self.output_locator,
            "grade_history": list(self.grade_history),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        grade = data.get("grade")
        return cls(
            name=PhaseName(data["name"]),
            status=PhaseStatus(data.get("status", PhaseStatus.NOT_STARTED.value)),
            grade=int(grade) if grade is not None else None,
            retry_count=int(data.get("retry_count", 0)),
            output_locator=data.get("output_locator"),
            grade_history=[int(item) for item in data.get("grade_history", [])],
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
        )


@dataclass(slots=True)
class Checkpoint:
    name: str
    phase: PhaseName
    created_at: str = field(default_factory=utcnow_iso)
    discarded: bool = False
    snapshot_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase.value,
            "created_at": self.created_at,
            "discarded": self.discarded,
            "snapshot_ref": self.snapshot_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            name=str(data["name"]),
            phase=PhaseName(data["phase"]),
            created_at=str(data.get("created_at") or utcnow_iso()),
            discarded=bool(data.get("discarded", False)),
            snapshot_ref=data.get("snapshot_ref"),
        )


@dataclass(slots=True, frozen=True)
class QualityGateResult:
    phase: PhaseName | None
    grade: int
    passed: bool
    threshold: int = 80
    anomalous: bool = False
    raw_grade: int | None = None


@dataclass(slots=True, frozen=True)
class RecoveryDecision:
    kind: DecisionKind
    reason: str
    phase: PhaseName | None = None
    trigger: Trigger | None = None
    severity: Severity | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "reason": self.reason,
            "phase": self.phase.value if self.phase else None,
            "trigger": self.trigger.value if self.trigger else None,
            "severity": self.severity.value if self.severity else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryDecision:
        return cls(
            kind=DecisionKind(data["kind"]),
            reason=str(data.get("reason", "")),
            phase=PhaseName(data["phase"]) if data.get("phase") else None,
            trigger=Trigger(data["trigger"]) if data.get("trigger") else None,
            severity=Severity(data["severity"]) if data.get("severity") else None,
        )


@dataclass(slots=True, frozen=True)
class RestoreResult:
    checkpoint: str
    target_phase: PhaseName


@dataclass(slots=True)
class EscalationReport:
    run_id: str
    failing_phase: PhaseName | None
    retry_history: list[int]
    reason: str
    trigger: Trigger | None = None
    severity: Severity | None = None
    root_cause: str | None = None
    options: list[dict[str, str]] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "failing_phase": self.failing_phase.value if self.failing_phase else None,
            "retry_history": list(self.retry_history),
            "reason": self.reason,
            "trigger": self.trigger.value if self.trigger else None,
            "severity": self.severity.value if self.severity else None,
            "root_cause": self.root_cause,
            "options": [dict(option) for option in self.options],
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationReport:
        return cls(
            run_id=str(data.get("run_id", "")),
            failing_phase=PhaseName(data["failing_phase"]) if data.get("failing_phase") else None,
            retry_history=[int(item) for item in data.get("retry_history", [])],
            reason=str(data.get("reason", "")),
            trigger=Trigger(data["trigger"]) if data.get("trigger") else None,
            severity=Severity(data["severity"]) if data.get("severity") else None,
            root_cause=data.get("root_cause"),
            options=[dict(option) for option in data.get("options", [])],
            created_at=str(data.get("created_at") or utcnow_iso()),
        )

    def render_markdown(self) -> str:
        phase = self.failing_phase.value if self.failing_phase else "pipeline"
        history = ", ".join(str(grade) for grade in self.retry_history) or "none"
        lines = [
            "# Human Escalation Required",
            "",
            f"- Run: `{self.run_id}`",
            f"- Failing phase: {phase}",
            f"- Retry history (grades): {history}",
            f"- Trigger: {self.trigger.value if self.trigger else 'unknown'}",
            f"- Severity: {self.severity.value if self.severity else 'unknown'}",
            f"- Reason: {self.reason}",
        ]
        if self.root_cause:
            lines.append(f"- Root-cause hypothesis: {self.root_cause}")
        lines.extend(["", "## Options", ""])
        for index, option in enumerate(self.options, start=1):
            lines.append(f"{index}. **{option['action']}**: {option['description']}")
        return "\n".join(lines).strip() + "\n"


@dataclass(slots=True)
class PipelineRun:
    run_id: str
    task: Task
    phases: list[Phase]
    status: RunStatus = RunStatus.RUNNING
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    checkpoints: list[Checkpoint] = field(default_factory=list)
    decisions: list[RecoveryDecision] = field(default_factory=list)
    rollbacks: dict[str, int] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    escalation: EscalationReport | None = None

    def phase(self, name: PhaseName) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(name.value)

    def phase_index(self, name: PhaseName) -> int:
        for index, phase in enumerate(self.phases):
            if phase.name == name:
                return index
        raise KeyError(name.value)

    def decisions_of(self, kind: DecisionKind) -> list[RecoveryDecision]:
        return [decision for decision in self.decisions if decision.kind == kind]

    def raise_for_status(self) -> None:
        """Raise when the run did not pass; running and passed runs return quietly."""
        if self.status is RunStatus.ESCALATED:
            reason = self.escalation.reason if self.escalation else "escalated"
            raise EscalationRequired(
                f"Run {self.run_id} needs a human decision: {reason}", run_id=self.run_id
            )
        if self.status in (RunStatus.FAILED, RunStatus.ABORTED):
            detail = f": {self.errors[-1]}" if self.errors else ""
            raise MaestroError(f"Run {self.run_id} ended {self.status.value}{detail}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task": self.task.to_dict(),
            "phases": [phase.to_dict() for phase in self.phases],
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "checkpoints": [checkpoint.to_dict() for checkpoint in self.checkpoints],
            "decisions": [decision.to_dict() for decision in self.decisions],
            "rollbacks": dict(self.rollbacks),
            "errors": list(self.errors),
            "escalation": self.escalation.to_dict() if self.escalation else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineRun:
        escalation = data.get("escalation")
        return cls(
            run_id=str(data["run_id"]),
            task=Task.from_dict(data["task"]),
            phases=[Phase.from_dict(item) for item in data.get("phases", [])],
            status=RunStatus(data.get("status", RunStatus.RUNNING.value)),
            started_at=str(data.get("started_at") or utcnow_iso()),
            ended_at=data.get("ended_at"),
            checkpoints=[Checkpoint.from_dict(item) for item in data.get("checkpoints", [])],
            decisions=[RecoveryDecision.from_dict(item) for item in data.get("decisions", [])],
            rollbacks={str(key): int(value) for key, value in data.get("rollbacks", {}).items()},
            errors=[str(item) for item in data.get("errors", [])],
            escalation=EscalationReport.from_dict(escalation) if escalation else None,
        )
