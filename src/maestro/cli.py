from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from maestro.checkpoints import CheckpointManager
from maestro.classifier import Indicator, ScopeIndicators, build_task
from maestro.config import MaestroConfig, load_config, save_config
from maestro.engine import PipelineEngine
from maestro.errors import (
    CheckpointNotFoundError,
    DuplicateCheckpointNameError,
    MaestroError,
    StateError,
    ValidationError,
    VersionControlError,
)
from maestro.executors import CommandPhaseExecutor, CommandReviewer
from maestro.metrics import MetricsRecorder, render_report, summarize
from maestro.models import (
    DecisionKind,
    Mode,
    PhaseName,
    PhaseStatus,
    PipelineRun,
    RunStatus,
    phases_for_mode,
)
from maestro.state import (
    ArtifactStore,
    GitVersionControl,
    NullVersionControl,
    StateStore,
    VersionControl,
)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ESCALATED = 2
EXIT_INVALID_ARGUMENTS = 3


class InvalidArguments(click.UsageError):
    exit_code = EXIT_INVALID_ARGUMENTS


class MaestroGroup(click.Group):
    """Reports usage errors with exit code 3 instead of click's default 2."""

    def make_context(self, info_name, args, parent=None, **extra):  # type: ignore[override]
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except InvalidArguments:
            raise
        except click.UsageError as exc:
            raise InvalidArguments(exc.message, exc.ctx) from exc

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except InvalidArguments:
            raise
        except click.UsageError as exc:
            raise InvalidArguments(exc.message, exc.ctx) from exc


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: MaestroConfig
    store: StateStore
    artifacts: ArtifactStore
    vcs: VersionControl


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _repo_relative(repo_root: Path, paths: list[Path]) -> tuple[str, ...]:
    kept: list[str] = []
    for path in paths:
        try:
            relative = path.relative_to(repo_root).as_posix()
        except ValueError:
            continue
        if relative != ".":
            kept.append(relative)
    return tuple(kept)


def _configure_logging(level: str, verbose: bool) -> None:
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=resolved, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("maestro").setLevel(resolved)


def _load_runtime(ctx: click.Context, config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config.logging.level, bool(ctx.obj and ctx.obj.get("verbose")))

    state_dir = _resolve_path(repo_root, config.state.directory)
    artifacts_dir = _resolve_path(repo_root, config.state.artifacts_dir)
    metrics_dir = _resolve_path(repo_root, config.state.metrics_dir)
    vcs: VersionControl = NullVersionControl()
    if config.vcs.enabled:
        git = GitVersionControl(
            repo_root,
            remote=config.vcs.remote,
            keep_paths=_repo_relative(
                repo_root, [state_dir, artifacts_dir, metrics_dir, config_path]
            ),
        )
        if git.enabled:
            vcs = git
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=StateStore(state_dir),
        artifacts=ArtifactStore(artifacts_dir),
        vcs=vcs,
    )


def _load_run(runtime: Runtime, run_id: str) -> PipelineRun:
    try:
        run = runtime.store.load_run(run_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if run is None:
        raise click.ClickException(f"Run not found: {run_id}")
    return run


def _echo_run(run: PipelineRun) -> None:
    click.echo(f"Run ID: {run.run_id}")
    click.echo(f"Task: {run.task.description}")
    click.echo(f"Mode: {run.task.mode.value} (score {run.task.score})")
    click.echo(f"Status: {run.status.value}")
    for phase in run.phases:
        grade = "-" if phase.grade is None else str(phase.grade)
        click.echo(
            f"  {phase.name.value:<15} {phase.status.value:<12} grade={grade:<4} "
            f"retries={phase.retry_count}"
        )
    for decision in run.decisions:
        if decision.kind is DecisionKind.PROCEED:
            continue
        phase_name = decision.phase.value if decision.phase else "pipeline"
        click.echo(f"  decision: {decision.kind.value} {phase_name}: {decision.reason}")


def _exit_for(run: PipelineRun) -> int:
    if run.status is RunStatus.PASSED:
        return EXIT_OK
    if run.status is RunStatus.ESCALATED:
        return EXIT_ESCALATED
    return EXIT_FAILED


@click.group(cls=MaestroGroup)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Maestro pipeline orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("init")
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def init_command(ctx: click.Context, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    save_config(runtime.config_path, runtime.config)
    runtime.store.state_dir.mkdir(parents=True, exist_ok=True)
    runtime.artifacts.root.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Maestro in {runtime.repo_root}")
    click.echo(f"Config: {runtime.config_path}")
    click.echo(f"State: {runtime.store.state_dir}")
    click.echo(f"Version control: {'git' if runtime.vcs.enabled else 'disabled'}")


@cli.command("run")
@click.argument("description")
@click.option(
    "--indicator",
    "-i",
    "indicators",
    multiple=True,
    type=click.Choice([indicator.value for indicator in Indicator]),
    help="Complexity indicator; repeat for several.",
)
@click.option("--files", "file_count", type=click.IntRange(min=0), default=None)
@click.option("--exact-instructions", is_flag=True, default=False)
@click.option(
    "--mode",
    "mode_value",
    type=click.Choice([mode.value for mode in Mode]),
    default=None,
    help="Override the mode chosen from the complexity score.",
)
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    description: str,
    indicators: tuple[str, ...],
    file_count: int | None,
    exact_instructions: bool,
    mode_value: str | None,
    config_value: str,
) -> None:
    runtime = _load_runtime(ctx, config_value)
    try:
        if file_count is not None:
            scope = ScopeIndicators.from_counts(
                file_count=file_count, extra=indicators, exact_instructions=exact_instructions
            )
        else:
            scope = ScopeIndicators.of(*indicators, exact_instructions=exact_instructions)
        task = build_task(description, scope)
    except ValidationError as exc:
        raise click.ClickException(str(exc)) from exc
    if mode_value is not None and Mode(mode_value) is not task.mode:
        task = task.rescored(task.score, Mode(mode_value))

    recorder = MetricsRecorder(_resolve_path(runtime.repo_root, runtime.config.state.metrics_dir))
    executor = CommandPhaseExecutor(
        runtime.config.executors.commands,
        runtime.artifacts,
        topic=description,
        working_directory=runtime.repo_root,
        event_hook=recorder,
    )
    missing = executor.missing_commands([phase.name for phase in phases_for_mode(task.mode)])
    if missing:
        raise click.ClickException(
            "No executor command configured for: "
            + ", ".join(phase.value for phase in missing)
            + f". Set [executors] commands in {runtime.config_path.name}."
        )
    reviewer = None
    if runtime.config.executors.review_command.strip():
        reviewer = CommandReviewer(
            runtime.config.executors.review_command, working_directory=runtime.repo_root
        )
    engine = PipelineEngine(
        executor,
        runtime.config,
        reviewer=reviewer,
        store=runtime.store,
        artifacts=runtime.artifacts,
        vcs=runtime.vcs,
        event_hook=recorder,
    )
    try:
        run = asyncio.run(engine.run_pipeline(task))
    except MaestroError as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_run(run)
    if run.escalation is not None:
        report_path = runtime.store.state_dir / "escalations" / f"{run.run_id}.md"
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(run.escalation.render_markdown(), encoding="utf-8")
        click.echo("")
        click.echo(run.escalation.render_markdown())
        click.echo(f"Escalation report: {report_path}")
    raise SystemExit(_exit_for(run))


@cli.command("status")
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def status_command(ctx: click.Context, run_id: str, as_json: bool, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    run = _load_run(runtime, run_id)
    if as_json:
        click.echo(json.dumps(run.to_dict(), indent=2, sort_keys=True))
        return
    _echo_run(run)


@cli.group("checkpoint", cls=MaestroGroup)
def checkpoint_group() -> None:
    """Manage checkpoints of a recorded run."""


@checkpoint_group.command("list")
@click.argument("run_id")
@click.option("--all", "include_all", is_flag=True, default=False, help="Include discarded.")
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def checkpoint_list(ctx: click.Context, run_id: str, include_all: bool, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    run = _load_run(runtime, run_id)
    checkpoints = [
        checkpoint
        for checkpoint in CheckpointManager(runtime.vcs).list(run)
        if include_all or not checkpoint.discarded
    ]
    if not checkpoints:
        click.echo("No checkpoints found.")
        return
    for checkpoint in checkpoints:
        marker = " (discarded)" if checkpoint.discarded else ""
        click.echo(
            f"{checkpoint.name}\t{checkpoint.phase.value}\t{checkpoint.created_at}{marker}"
        )


def _default_checkpoint_phase(run: PipelineRun) -> PhaseName:
    for phase in run.phases:
        if phase.status is not PhaseStatus.COMPLETED:
            return phase.name
    return run.phases[-1].name


@checkpoint_group.command("create")
@click.argument("run_id")
@click.argument("name")
@click.option("--phase", "phase_value", type=click.Choice([p.value for p in PhaseName]))
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def checkpoint_create(
    ctx: click.Context, run_id: str, name: str, phase_value: str | None, config_value: str
) -> None:
    runtime = _load_runtime(ctx, config_value)
    run = _load_run(runtime, run_id)
    phase = PhaseName(phase_value) if phase_value else _default_checkpoint_phase(run)
    try:
        checkpoint = CheckpointManager(runtime.vcs).create(run, phase, name)
    except (DuplicateCheckpointNameError, VersionControlError) as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.store.save_run(run)
    click.echo(f"Created checkpoint {checkpoint.name} before {checkpoint.phase.value}")


@checkpoint_group.command("restore")
@click.argument("run_id")
@click.argument("name")
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def checkpoint_restore(ctx: click.Context, run_id: str, name: str, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    run = _load_run(runtime, run_id)
    try:
        result = CheckpointManager(runtime.vcs).restore(run, name)
    except (CheckpointNotFoundError, VersionControlError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {result.checkpoint}; resume at {result.target_phase.value}")


@checkpoint_group.command("discard")
@click.argument("run_id")
@click.argument("name")
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def checkpoint_discard(ctx: click.Context, run_id: str, name: str, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    run = _load_run(runtime, run_id)
    try:
        CheckpointManager(runtime.vcs).discard(run, name)
    except VersionControlError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.store.save_run(run)
    click.echo(f"Discarded checkpoint {name}")


@cli.command("abort")
@click.argument("run_id")
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def abort_command(ctx: click.Context, run_id: str, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    try:
        run = runtime.store.request_abort(run_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if run.status.terminal:
        click.echo(f"Run {run_id} already finished: {run.status.value}")
    else:
        click.echo(f"Abort requested for {run_id}; it stops before its next attempt.")


@cli.command("runs")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def runs_command(ctx: click.Context, as_json: bool, config_value: str) -> None:
    """List recorded runs, oldest first."""
    runtime = _load_runtime(ctx, config_value)
    try:
        runs = runtime.store.list_runs()
    except (KeyError, ValueError) as exc:
        raise click.ClickException(f"Corrupt run record: {exc}") from exc
    if as_json:
        payload = [
            {
                "run_id": run.run_id,
                "task": run.task.description,
                "mode": run.task.mode.value,
                "status": run.status.value,
                "started_at": run.started_at,
                "ended_at": run.ended_at,
            }
            for run in runs
        ]
        click.echo(json.dumps(payload, indent=2))
        return
    if not runs:
        click.echo("No runs recorded.")
        return
    for run in runs:
        click.echo(
            f"{run.run_id}\t{run.status.value}\t{run.task.mode.value}\t{run.task.description}"
        )


@cli.command("artifacts")
@click.option("--phase", "phase_value", type=click.Choice([p.value for p in PhaseName]))
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def artifacts_command(
    ctx: click.Context, phase_value: str | None, as_json: bool, config_value: str
) -> None:
    """List phase artifacts, optionally for one phase."""
    runtime = _load_runtime(ctx, config_value)
    phase = PhaseName(phase_value) if phase_value else None
    paths = runtime.artifacts.list_artifacts(phase)
    if as_json:
        payload = [
            {"phase": path.parent.name, "name": path.name, "path": str(path)} for path in paths
        ]
        click.echo(json.dumps(payload, indent=2))
        return
    if not paths:
        click.echo("No artifacts found.")
        return
    for path in paths:
        click.echo(f"{path.parent.name}\t{path}")


@cli.command("report")
@click.option("--output", "output_path", type=click.Path(dir_okay=False), default=None)
@click.option("--config", "config_value", default="maestro.toml", show_default=True)
@click.pass_context
def report_command(ctx: click.Context, output_path: str | None, config_value: str) -> None:
    runtime = _load_runtime(ctx, config_value)
    metrics_dir = _resolve_path(runtime.repo_root, runtime.config.state.metrics_dir)
    summary = summarize(metrics_dir)
    if summary["total"] == 0:
        click.echo("No pipeline execution metrics found.")
        return
    rendered = render_report(summary)
    if output_path is None:
        click.echo(rendered)
        return
    target = _resolve_path(runtime.repo_root, output_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(rendered, encoding="utf-8")
    click.echo(f"Pipeline report written to {target}")


def main() -> None:
    cli()
