"""Recovery decisions for failed phases.

The controller holds no state of its own. The engine passes in the retry
counter, the rollback tally and whether a checkpoint is available, so the
same inputs always produce the same decision.
"""

from __future__ import annotations

import logging

from maestro.config import RecoveryConfig, SeverityConfig
from maestro.errors import ValidationError
from maestro.models import (
    DecisionKind,
    EscalationReport,
    Phase,
    PipelineRun,
    QualityGateResult,
    RecoveryDecision,
    Severity,
    Trigger,
)

logger = logging.getLogger(__name__)

ESCALATION_OPTIONS: tuple[tuple[str, str], ...] = (
    ("Rollback", "Restore the last checkpoint and discard the failing phase's changes."),
    ("Keep", "Keep the current output and continue manually from the failing phase."),
    ("Escalate further", "Hand the task to a senior reviewer or owning team."),
)


def classify_severity(
    *,
    grade: int | None = None,
    elapsed_seconds: float | None = None,
    limit_seconds: float | None = None,
    build_broken: bool = False,
    config: SeverityConfig | None = None,
) -> Severity:
    cfg = config or SeverityConfig()
    if build_broken:
        return Severity.CRITICAL
    if elapsed_seconds is not None and limit_seconds is not None:
        if limit_seconds <= 0:
            return Severity.CRITICAL
        ratio = elapsed_seconds / limit_seconds
        if ratio <= cfg.timeout_moderate_ratio:
            return Severity.MODERATE
        if ratio <= cfg.timeout_severe_ratio:
            return Severity.SEVERE
        return Severity.CRITICAL
    if grade is None:
        raise ValidationError("Severity needs a grade, a timeout measurement, or build_broken.")
    if grade >= cfg.minor_floor:
        return Severity.MINOR
    if grade >= cfg.moderate_floor:
        return Severity.MODERATE
    return Severity.SEVERE


class RecoveryController:
    def __init__(self, config: RecoveryConfig | None = None) -> None:
        self.config = config or RecoveryConfig()

    @staticmethod
    def retries_remaining(phase: Phase, max_retries: int) -> bool:
        # max_retries counts executions, including the first one.
        return phase.retry_count + 1 < max_retries

    def proceed(self, phase: Phase, result: QualityGateResult) -> RecoveryDecision:
        reason = f"grade {result.grade} met the {result.threshold} threshold"
        if phase.retry_count:
            reason += f" after {phase.retry_count + 1} attempts"
        logger.info("Recovery for %s: proceed (%s)", phase.name.value, reason)
        return RecoveryDecision(kind=DecisionKind.PROCEED, reason=f"{reason}.", phase=phase.name)

    def decide(
        self,
        phase: Phase,
        trigger: Trigger,
        severity: Severity,
        *,
        max_retries: int,
        checkpoint_available: bool,
        rollbacks: int = 0,
    ) -> RecoveryDecision:
        name = phase.name.value
        attempt = phase.retry_count + 1

        def decision(kind: DecisionKind, reason: str) -> RecoveryDecision:
            result = RecoveryDecision(
                kind=kind, reason=reason, phase=phase.name, trigger=trigger, severity=severity
            )
            logger.info("Recovery for %s: %s (%s)", name, kind.value, reason)
            return result

        if severity is Severity.CRITICAL:
            return decision(
                DecisionKind.ESCALATE,
                f"{severity.value} {trigger.value} in {name} requires human review.",
            )
        if rollbacks >= self.config.max_rollbacks_per_phase:
            return decision(
                DecisionKind.ESCALATE,
                f"{name} was already rolled back {rollbacks} time(s).",
            )

        remaining = self.retries_remaining(phase, max_retries)
        if severity in (Severity.MINOR, Severity.MODERATE) and remaining:
            return decision(
                DecisionKind.RETRY,
                f"{severity.value} {trigger.value} on attempt {attempt} of {max_retries}.",
            )
        if severity is Severity.SEVERE and checkpoint_available:
            return decision(
                DecisionKind.ROLLBACK,
                f"severe {trigger.value} in {name}; restoring the last checkpoint.",
            )
        if not remaining:
            if checkpoint_available:
                return decision(
                    DecisionKind.ROLLBACK,
                    f"retries exhausted after {attempt} attempt(s); restoring the last checkpoint.",
                )
            return decision(
                DecisionKind.ESCALATE,
                f"retries exhausted after {attempt} attempt(s) and no checkpoint is available.",
            )
        return decision(
            DecisionKind.RETRY,
            f"severe {trigger.value} with no checkpoint; attempt {attempt} of {max_retries}.",
        )


def _root_cause(phase: Phase | None, decision: RecoveryDecision) -> str | None:
    history = phase.grade_history if phase else []
    if decision.trigger is Trigger.TIMEOUT:
        return "The phase repeatedly exceeded its time limit; the task may be under-scoped."
    if decision.trigger is Trigger.EXECUTOR_ERROR:
        return "The phase executor failed outright; check its command and environment."
    if decision.severity is Severity.CRITICAL:
        return "The build is broken by the phase output."
    if len(history) >= 2 and len(set(history)) == 1:
        return "Grades did not move between attempts; retries are not addressing the feedback."
    if len(history) >= 2 and history[-1] < history[0]:
        return "Grades got worse across attempts; later attempts regressed."
    return None


def build_escalation_report(
    run: PipelineRun,
    phase: Phase | None,
    decision: RecoveryDecision,
) -> EscalationReport:
    return EscalationReport(
        run_id=run.run_id,
        failing_phase=phase.name if phase else decision.phase,
        retry_history=list(phase.grade_history) if phase else [],
        reason=decision.reason,
        trigger=decision.trigger,
        severity=decision.severity,
        root_cause=_root_cause(phase, decision),
        options=[
            {"action": action, "description": description}
            for action, description in ESCALATION_OPTIONS
        ],
    )
