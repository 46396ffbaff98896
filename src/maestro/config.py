from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from maestro.errors import ValidationError
from maestro.models import PhaseName

DEFAULT_MAX_RETRIES: dict[str, int] = {
    PhaseName.RESEARCH.value: 2,
    PhaseName.PLANNING.value: 2,
    PhaseName.IMPLEMENTATION.value: 3,
    PhaseName.VALIDATION.value: 2,
    PhaseName.POST_MORTEM.value: 1,
    PhaseName.DOCUMENTATION.value: 1,
}

DEFAULT_WARNING_SECONDS: dict[str, float] = {
    PhaseName.RESEARCH.value: 600.0,
    PhaseName.PLANNING.value: 600.0,
    PhaseName.IMPLEMENTATION.value: 1800.0,
    PhaseName.VALIDATION.value: 900.0,
    PhaseName.POST_MORTEM.value: 300.0,
    PhaseName.DOCUMENTATION.value: 600.0,
}

DEFAULT_HARD_LIMIT_SECONDS: dict[str, float] = {
    PhaseName.RESEARCH.value: 1200.0,
    PhaseName.PLANNING.value: 1200.0,
    PhaseName.IMPLEMENTATION.value: 3600.0,
    PhaseName.VALIDATION.value: 1800.0,
    PhaseName.POST_MORTEM.value: 600.0,
    PhaseName.DOCUMENTATION.value: 1200.0,
}


def _merged(defaults: dict[str, Any], overrides: dict[str, Any] | None) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in (overrides or {}).items():
        if key not in DEFAULT_MAX_RETRIES:
            raise ValidationError(f"Unknown phase in configuration table: {key}")
        merged[key] = value
    return merged


def _phase_list(values: Any) -> list[str]:
    if not isinstance(values, list):
        raise ValidationError(f"Expected a list of phase names, got {values!r}")
    phases: list[str] = []
    for value in values:
        try:
            phases.append(PhaseName(str(value)).value)
        except ValueError as exc:
            raise ValidationError(f"Unknown phase in configuration list: {value}") from exc
    return phases


@dataclass(slots=True)
class GateConfig:
    threshold: int = 80


@dataclass(slots=True)
class RetriesConfig:
    max_retries: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_MAX_RETRIES))

    def for_phase(self, phase: PhaseName) -> int:
        return max(1, int(self.max_retries.get(phase.value, 1)))


@dataclass(slots=True)
class TimeoutsConfig:
    warning_seconds: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_WARNING_SECONDS)
    )
    hard_limit_seconds: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_HARD_LIMIT_SECONDS)
    )
    pipeline_hard_limit_seconds: float = 10800.0

    def warning_for(self, phase: PhaseName) -> float:
        return float(self.warning_seconds.get(phase.value, 600.0))

    def hard_limit_for(self, phase: PhaseName) -> float:
        return float(self.hard_limit_seconds.get(phase.value, 1200.0))


@dataclass(slots=True)
class SeverityConfig:
    minor_floor: int = 70
    moderate_floor: int = 60
    timeout_moderate_ratio: float = 1.25
    timeout_severe_ratio: float = 2.0


@dataclass(slots=True)
class RecoveryConfig:
    max_rollbacks_per_phase: int = 2
    checkpoint_before: list[str] = field(
        default_factory=lambda: [PhaseName.IMPLEMENTATION.value]
    )


@dataclass(slots=True)
class ExecutorsConfig:
    commands: dict[str, str] = field(default_factory=dict)
    review_command: str = ""


@dataclass(slots=True)
class StateConfig:
    directory: str = ".maestro"
    artifacts_dir: str = ".maestro/artifacts"
    metrics_dir: str = ".maestro/metrics"


@dataclass(slots=True)
class VcsConfig:
    enabled: bool = True
    branch_prefix: str = "maestro/"
    push: bool = False
    remote: str = "origin"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class MaestroConfig:
    gate: GateConfig = field(default_factory=GateConfig)
    retries: RetriesConfig = field(default_factory=RetriesConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    severity: SeverityConfig = field(default_factory=SeverityConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    executors: ExecutorsConfig = field(default_factory=ExecutorsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    vcs: VcsConfig = field(default_factory=VcsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> MaestroConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MaestroConfig:
        retries = data.get("retries", {})
        timeouts = dict(data.get("timeouts", {}))
        executors = dict(data.get("executors", {}))
        recovery = dict(data.get("recovery", {}))
        if "checkpoint_before" in recovery:
            recovery["checkpoint_before"] = _phase_list(recovery["checkpoint_before"])
        if "commands" in executors:
            executors["commands"] = _merged({}, executors["commands"])
        return cls(
            gate=GateConfig(**data.get("gate", {})),
            retries=RetriesConfig(
                max_retries=_merged(DEFAULT_MAX_RETRIES, retries.get("max_retries"))
            ),
            timeouts=TimeoutsConfig(
                warning_seconds=_merged(DEFAULT_WARNING_SECONDS, timeouts.get("warning_seconds")),
                hard_limit_seconds=_merged(
                    DEFAULT_HARD_LIMIT_SECONDS, timeouts.get("hard_limit_seconds")
                ),
                pipeline_hard_limit_seconds=float(
                    timeouts.get("pipeline_hard_limit_seconds", 10800.0)
                ),
            ),
            severity=SeverityConfig(**data.get("severity", {})),
            recovery=RecoveryConfig(**recovery),
            executors=ExecutorsConfig(**executors),
            state=StateConfig(**data.get("state", {})),
            vcs=VcsConfig(**data.get("vcs", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "gate": {"threshold": self.gate.threshold},
            "retries": {"max_retries": dict(self.retries.max_retries)},
            "timeouts": {
                "warning_seconds": dict(self.timeouts.warning_seconds),
                "hard_limit_seconds": dict(self.timeouts.hard_limit_seconds),
                "pipeline_hard_limit_seconds": self.timeouts.pipeline_hard_limit_seconds,
            },
            "severity": {
                "minor_floor": self.severity.minor_floor,
                "moderate_floor": self.severity.moderate_floor,
                "timeout_moderate_ratio": self.severity.timeout_moderate_ratio,
                "timeout_severe_ratio": self.severity.timeout_severe_ratio,
            },
            "recovery": {
                "max_rollbacks_per_phase": self.recovery.max_rollbacks_per_phase,
                "checkpoint_before": list(self.recovery.checkpoint_before),
            },
            "executors": {
                "commands": dict(self.executors.commands),
                "review_command": self.executors.review_command,
            },
            "state": {
                "directory": self.state.directory,
                "artifacts_dir": self.state.artifacts_dir,
                "metrics_dir": self.state.metrics_dir,
            },
            "vcs": {
                "enabled": self.vcs.enabled,
                "branch_prefix": self.vcs.branch_prefix,
                "push": self.vcs.push,
                "remote": self.vcs.remote,
            },
            "logging": {"level": self.logging.level},
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        pairs = ", ".join(f"{key} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + pairs + " }"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MaestroConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "gate",
        "retries",
        "timeouts",
        "severity",
        "recovery",
        "executors",
        "state",
        "vcs",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MaestroConfig:
    if not path.exists():
        return MaestroConfig.default()
    try:
        payload = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"Invalid configuration file {path}: {exc}") from exc
    try:
        return MaestroConfig.from_dict(payload)
    except TypeError as exc:
        raise ValidationError(f"Invalid configuration file {path}: {exc}") from exc


def save_config(path: Path, config: MaestroConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
