import pytest

from maestro.config import RecoveryConfig
from maestro.errors import ValidationError
from maestro.gate import evaluate
from maestro.models import (
    DecisionKind,
    Mode,
    Phase,
    PhaseName,
    PipelineRun,
    Severity,
    Task,
    Trigger,
)
from maestro.recovery import RecoveryController, build_escalation_report, classify_severity


@pytest.mark.parametrize(
    ("grade", "severity"),
    [(79, Severity.MINOR), (70, Severity.MINOR), (69, Severity.MODERATE), (60, Severity.MODERATE),
     (59, Severity.SEVERE), (0, Severity.SEVERE)],
)
def test_severity_from_grade(grade: int, severity: Severity) -> None:
    assert classify_severity(grade=grade) is severity


def test_build_broken_is_critical() -> None:
    assert classify_severity(grade=95, build_broken=True) is Severity.CRITICAL


@pytest.mark.parametrize(
    ("elapsed", "severity"),
    [(100.0, Severity.MODERATE), (125.0, Severity.MODERATE), (200.0, Severity.SEVERE),
     (201.0, Severity.CRITICAL)],
)
def test_severity_from_timeout_ratio(elapsed: float, severity: Severity) -> None:
    assert classify_severity(elapsed_seconds=elapsed, limit_seconds=100.0) is severity


def test_severity_needs_some_signal() -> None:
    with pytest.raises(ValidationError):
        classify_severity()


def _phase(retry_count: int = 0) -> Phase:
    return Phase(name=PhaseName.IMPLEMENTATION, retry_count=retry_count)


def test_minor_with_retries_remaining_retries() -> None:
    decision = RecoveryController().decide(
        _phase(0), Trigger.GATE_FAILURE, Severity.MINOR, max_retries=3, checkpoint_available=True
    )

    assert decision.kind is DecisionKind.RETRY
    assert decision.phase is PhaseName.IMPLEMENTATION
    assert decision.reason


def test_severe_with_checkpoint_rolls_back() -> None:
    decision = RecoveryController().decide(
        _phase(0), Trigger.GATE_FAILURE, Severity.SEVERE, max_retries=3, checkpoint_available=True
    )

    assert decision.kind is DecisionKind.ROLLBACK


def test_severe_without_checkpoint_retries_until_exhausted() -> None:
    controller = RecoveryController()
    kinds = [
        controller.decide(
            _phase(count),
            Trigger.GATE_FAILURE,
            Severity.SEVERE,
            max_retries=3,
            checkpoint_available=False,
        ).kind
        for count in range(3)
    ]

    assert kinds == [DecisionKind.RETRY, DecisionKind.RETRY, DecisionKind.ESCALATE]


def test_exhausted_retries_roll_back_when_checkpoint_exists() -> None:
    decision = RecoveryController().decide(
        _phase(2), Trigger.GATE_FAILURE, Severity.MODERATE, max_retries=3, checkpoint_available=True
    )

    assert decision.kind is DecisionKind.ROLLBACK


def test_critical_always_escalates() -> None:
    decision = RecoveryController().decide(
        _phase(0), Trigger.TIMEOUT, Severity.CRITICAL, max_retries=3, checkpoint_available=True
    )

    assert decision.kind is DecisionKind.ESCALATE


def test_repeated_rollbacks_escalate() -> None:
    controller = RecoveryController(RecoveryConfig(max_rollbacks_per_phase=2))
    decision = controller.decide(
        _phase(0),
        Trigger.GATE_FAILURE,
        Severity.SEVERE,
        max_retries=3,
        checkpoint_available=True,
        rollbacks=2,
    )

    assert decision.kind is DecisionKind.ESCALATE
    assert "rolled back" in decision.reason


def test_decide_is_deterministic() -> None:
    controller = RecoveryController()
    args = (_phase(1), Trigger.GATE_FAILURE, Severity.MODERATE)

    first = controller.decide(*args, max_retries=3, checkpoint_available=False)
    second = controller.decide(*args, max_retries=3, checkpoint_available=False)

    assert first == second


def test_escalation_report_lists_history_and_options() -> None:
    task = Task(id="task-1", description="Rewrite auth", score=6, mode=Mode.FULL)
    phase = Phase(name=PhaseName.IMPLEMENTATION, retry_count=2, grade_history=[55, 55, 55])
    run = PipelineRun(run_id="run-1", task=task, phases=[phase])
    decision = RecoveryController().decide(
        phase, Trigger.GATE_FAILURE, Severity.SEVERE, max_retries=3, checkpoint_available=False
    )

    report = build_escalation_report(run, phase, decision)
    markdown = report.render_markdown()

    assert report.failing_phase is PhaseName.IMPLEMENTATION
    assert report.retry_history == [55, 55, 55]
    assert [option["action"] for option in report.options] == [
        "Rollback",
        "Keep",
        "Escalate further",
    ]
    assert report.root_cause is not None
    assert markdown.startswith("# Human Escalation Required")
    assert "55, 55, 55" in markdown


def test_passing_gate_proceeds() -> None:
    result = evaluate(86, 80, phase=PhaseName.IMPLEMENTATION)

    decision = RecoveryController().proceed(_phase(1), result)

    assert decision.kind is DecisionKind.PROCEED
    assert decision.phase is PhaseName.IMPLEMENTATION
    assert decision.trigger is None and decision.severity is None
    assert decision.reason == "grade 86 met the 80 threshold after 2 attempts."
