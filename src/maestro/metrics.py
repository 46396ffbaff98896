"""Per-run metrics files and the aggregated pipeline report.

``MetricsRecorder`` is an engine event subscriber: pass it as ``event_hook``
and it writes one ``pipeline_{date}_{slug}.json`` file when the run finishes.
The same instance can be handed to a command executor to keep its process events.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from maestro.gate import letter_grade
from maestro.models import DecisionKind, Mode, PhaseName, RunStatus
from maestro.state.artifacts import slugify

logger = logging.getLogger(__name__)

OUTCOMES: dict[str, str] = {
    RunStatus.PASSED.value: "success",
    RunStatus.FAILED.value: "failure",
    RunStatus.ESCALATED.value: "escalated",
    RunStatus.ABORTED.value: "aborted",
    RunStatus.RUNNING.value: "running",
}

COMPLEXITY_LABELS: dict[str, str] = {
    Mode.INSTANT.value: "simple",
    Mode.FAST_TRACK.value: "moderate",
    Mode.FULL.value: "complex",
}

REPORT_STAGES: tuple[PhaseName, ...] = (
    PhaseName.RESEARCH,
    PhaseName.PLANNING,
    PhaseName.IMPLEMENTATION,
    PhaseName.VALIDATION,
)


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class MetricsRecorder:
    def __init__(self, metrics_dir: Path) -> None:
        self.metrics_dir = metrics_dir
        self.last_path: Path | None = None
        self._task: dict[str, Any] = {}
        self._agents: list[dict[str, Any]] = []
        self._stages: dict[str, dict[str, Any]] = {}
        self._issues: list[dict[str, str]] = []
        self._started_at: str | None = None
        self._executor_events: list[dict[str, Any]] = []

    def __call__(self, event: dict[str, Any]) -> None:
        kind = event.get("event")
        if kind == "run_started":
            self._task = dict(event.get("task", {}))
            self._started_at = event.get("at")
            self._agents = []
            self._stages = {}
            self._issues = []
            self._executor_events = []
        elif kind == "phase_finished":
            self._record_phase(event)
        elif kind == "decision" and event.get("kind") != DecisionKind.PROCEED.value:
            self._issues.append(
                {"description": str(event.get("reason", "")), "stage": str(event.get("phase"))}
            )
        elif kind in ("executor_start", "executor_exit"):
            payload = dict(event)
            payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
            self._executor_events.append(payload)
        elif kind == "run_finished":
            self.last_path = self.write(event["run"])

    def _record_phase(self, event: dict[str, Any]) -> None:
        duration = float(event.get("duration_seconds") or 0.0)
        grade = event.get("grade")
        passed = event.get("status") == "completed"
        self._agents.append(
            {
                "name": event.get("phase"),
                "startTime": event.get("started_at"),
                "endTime": event.get("ended_at"),
                "duration": duration,
                "status": event.get("status"),
                "grade": grade,
                "retries": event.get("retry_count", 0),
            }
        )
        stage = self._stages.setdefault(
            str(event.get("phase")), {"duration": 0.0, "attempts": 0}
        )
        # Stage durations are in minutes, as the report prints them.
        stage["duration"] = round(stage["duration"] + duration / 60.0, 3)
        stage["attempts"] += 1
        if grade is not None:
            stage["score"] = grade
            stage["grade"] = letter_grade(grade)
        stage["verdict"] = "APPROVED" if passed else "REJECTED"

    def build(self, run: dict[str, Any]) -> dict[str, Any]:
        task = run.get("task") or self._task
        started_at = run.get("started_at") or self._started_at
        ended_at = run.get("ended_at")
        start = _parse_iso(started_at)
        end = _parse_iso(ended_at)
        duration = (end - start).total_seconds() if start and end else 0.0
        status = str(run.get("status", RunStatus.RUNNING.value))
        outcome = OUTCOMES.get(status, status)
        if outcome == "failure" and run.get("rollbacks"):
            outcome = "rolled-back"
        mode = str(task.get("mode", ""))
        return {
            "taskId": task.get("id"),
            "date": (start or datetime.now(UTC)).date().isoformat(),
            "startTime": started_at,
            "endTime": ended_at,
            "duration": duration,
            "agents": list(self._agents),
            "status": status,
            "errors": list(run.get("errors", [])),
            "pipelineId": run.get("run_id"),
            "task": task.get("description"),
            "mode": mode,
            "complexity": COMPLEXITY_LABELS.get(mode, mode or None),
            "score": task.get("score"),
            "outcome": outcome,
            "stages": {name: dict(stage) for name, stage in self._stages.items()},
            "issues": list(self._issues),
            "executorEvents": list(self._executor_events[-200:]),
        }

    def write(self, run: dict[str, Any]) -> Path:
        payload = self.build(run)
        self.metrics_dir.mkdir(parents=True, exist_ok=True)
        base = f"pipeline_{payload['date']}_{slugify(str(payload.get('task') or 'task'))}"
        path = self.metrics_dir / f"{base}.json"
        suffix = 2
        while path.exists():
            path = self.metrics_dir / f"{base}-{suffix}.json"
            suffix += 1
        path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        logger.info("Wrote pipeline metrics to %s", path)
        return path


def load_metrics(metrics_dir: Path) -> list[dict[str, Any]]:
    if not metrics_dir.is_dir():
        return []
    records: list[dict[str, Any]] = []
    for path in sorted(metrics_dir.glob("*.json")):
        if "schema" in path.name:
            continue
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable metrics file %s", path)
            continue
        if isinstance(payload, dict):
            records.append(payload)
    return records


def _stage_stats(records: list[dict[str, Any]], stage: PhaseName) -> dict[str, Any] | None:
    entries = [
        record["stages"][stage.value]
        for record in records
        if isinstance(record.get("stages"), dict) and record["stages"].get(stage.value)
    ]
    if not entries:
        return None
    durations = [float(entry.get("duration") or 0.0) for entry in entries]
    scores = [int(entry["score"]) for entry in entries if entry.get("score") is not None]
    failures = sum(
        1 for entry in entries if entry.get("grade") == "F" or entry.get("verdict") == "REJECTED"
    )
    average_score = sum(scores) // len(scores) if scores else None
    return {
        "count": len(entries),
        "avg_duration": sum(durations) / len(durations),
        "avg_score": average_score,
        "avg_grade": letter_grade(average_score) if average_score is not None else None,
        "failure_rate": failures * 100.0 / len(entries),
    }


def summarize(metrics_dir: Path) -> dict[str, Any]:
    records = load_metrics(metrics_dir)
    outcomes = Counter(str(record.get("outcome")) for record in records)
    total = len(records)
    success = outcomes["success"]
    failed = outcomes["failure"] + outcomes["rolled-back"]
    escalated = outcomes["escalated"]

    issues: Counter[tuple[str, str]] = Counter()
    for record in records:
        for issue in record.get("issues") or []:
            issues[(str(issue.get("description")), str(issue.get("stage")))] += 1

    recent = sorted(records, key=lambda record: str(record.get("startTime") or ""), reverse=True)
    return {
        "total": total,
        "success": success,
        "failed": failed,
        "escalated": escalated,
        "success_rate": round(success * 100.0 / total, 1) if total else 0.0,
        "stages": {stage.value: _stage_stats(records, stage) for stage in REPORT_STAGES},
        "common_issues": [
            {"description": description, "stage": stage, "count": count}
            for (description, stage), count in issues.most_common(5)
        ],
        "recent": [
            {
                "pipelineId": record.get("pipelineId"),
                "task": record.get("task"),
                "complexity": record.get("complexity"),
                "outcome": record.get("outcome"),
            }
            for record in recent[:10]
        ],
        "complexity": dict(
            Counter(str(record.get("complexity") or "Unknown") for record in records).most_common()
        ),
        "modes": dict(
            Counter(str(record.get("mode") or "Unknown") for record in records).most_common()
        ),
    }


def render_report(summary: dict[str, Any], *, generated_at: datetime | None = None) -> str:
    now = generated_at or datetime.now(UTC)
    lines = [
        f"# Pipeline Metrics Summary - {now.strftime('%B %Y')}",
        "",
        f"> Generated: {now.replace(microsecond=0).isoformat()}",
        "",
        "## Success Rate",
        "",
        f"**{summary['success']} APPROVED** | **{summary['failed']} REJECTED** | "
        f"**{summary['escalated']} ESCALATED** | **{summary['success_rate']}% success rate**",
        "",
        f"**Total Executions**: {summary['total']}",
        "",
        "## Stage Performance",
        "",
        "| Stage | Avg Duration | Avg Grade | Failure Rate |",
        "|-------|-------------|-----------|--------------|",
    ]
    for name, stats in summary["stages"].items():
        title = name.replace("_", " ").title()
        if stats is None:
            lines.append(f"| {title} | - | - | - |")
            continue
        grade = "-"
        if stats["avg_score"] is not None:
            grade = f"{stats['avg_grade']} ({stats['avg_score']})"
        duration = f"{stats['avg_duration']:.1f} min"
        lines.append(f"| {title} | {duration} | {grade} | {stats['failure_rate']:.1f}% |")

    lines.extend(["", "## Common Issues", ""])
    if summary["common_issues"]:
        for index, issue in enumerate(summary["common_issues"], start=1):
            lines.append(
                f"{index}. {issue['description']} in {issue['stage']} "
                f"({issue['count']} occurrences)"
            )
    else:
        lines.append("No issues recorded")

    lines.extend(
        [
            "",
            "## Recent Executions",
            "",
            "| Pipeline ID | Task | Complexity | Outcome |",
            "|-------------|------|------------|---------|",
        ]
    )
    if summary["recent"]:
        for record in summary["recent"]:
            task = str(record.get("task") or "-")[:40]
            lines.append(
                f"| `{record.get('pipelineId') or '-'}` | {task} | "
                f"{record.get('complexity') or '-'} | {record.get('outcome') or '-'} |"
            )
    else:
        lines.append("| - | No executions recorded | - | - |")

    for heading, key in (("Complexity Distribution", "complexity"), ("Mode Distribution", "modes")):
        lines.extend(["", f"## {heading}", ""])
        if summary[key]:
            for label, count in summary[key].items():
                lines.append(f"- **{label}**: {count} executions")
        else:
            lines.append("- No data available")
    return "\n".join(lines) + "\n"
