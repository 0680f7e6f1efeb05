from __future__ import annotations

import asyncio
import errno
import json
import os
import re
import stat
from contextlib import suppress
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from atomrun.config.loader import config_to_dict, load_config, load_task_set, validate_config
from atomrun.config.schema import RuntimeConfig
from atomrun.dag.build import build_graph
from atomrun.dag.model import TaskGraph
from atomrun.dag.plan import ExecutionPlan, plan
from atomrun.exec.control import (
    ControlCommand,
    consume_control_request,
    watch_control_requests,
    write_control_request,
)
from atomrun.exec.docker import DockerSandboxRuntime
from atomrun.exec.process import ProcessSandboxRuntime
from atomrun.report.progress import ConsoleSink, JsonlSink, ProgressReporter
from atomrun.report.render_md import render_markdown
from atomrun.report.summarize import build_summary, plan_summary
from atomrun.sched.scheduler import ExecutionScheduler, prepare_retry
from atomrun.state.lock import run_lock
from atomrun.state.model import RunState
from atomrun.state.store import load_state, save_state_atomic
from atomrun.util.errors import (
    ConfigError,
    GraphValidationError,
    RunConflictError,
    SchedulerError,
    StateError,
)
from atomrun.util.ids import new_run_id
from atomrun.util.logging import configure_logging
from atomrun.util.path_guard import has_symlink_ancestor, is_symlink_path
from atomrun.util.paths import ensure_run_layout, run_dir
from atomrun.util.tail import tail_lines

app = typer.Typer(help="Atomic task graph scheduler and sandbox orchestrator")
console = Console()
_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RUN_ID_MAX_LEN = 128
_DEFAULT_HOME = Path(".atomrun")

HomeOption = Annotated[Path, typer.Option("--home")]
ConfigOption = Annotated[Path | None, typer.Option("--config", exists=True, dir_okay=False)]
BackendOption = Annotated[str | None, typer.Option("--backend")]
MaxInstancesOption = Annotated[int | None, typer.Option("--max-instances", min=1)]
MemoryOption = Annotated[int | None, typer.Option("--memory-limit-mb", min=1)]
TimeoutOption = Annotated[float | None, typer.Option("--timeout-sec", min=0.001)]
SourceDirOption = Annotated[Path | None, typer.Option("--source-dir", file_okay=False)]
LogLevelOption = Annotated[str, typer.Option("--log-level")]


def _exit_code_for_state(state: RunState) -> int:
    if state.run_status == "completed":
        return 0
    if state.stopped:
        return 4
    return 3


def _validate_run_id_or_exit(run_id: str) -> None:
    if len(run_id) > _RUN_ID_MAX_LEN or _RUN_ID_PATTERN.fullmatch(run_id) is None:
        console.print(f"[red]Invalid run_id:[/red] {run_id}")
        raise typer.Exit(2)


def _validate_home_or_exit(home: Path) -> None:
    try:
        unsafe_home = is_symlink_path(home) or has_symlink_ancestor(home)
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2) from exc
    if unsafe_home:
        console.print(f"[red]Invalid home:[/red] {home}")
        raise typer.Exit(2)


def _write_text_file(destination: Path, payload: str) -> None:
    if has_symlink_ancestor(destination):
        raise OSError(f"path must not include symlink: {destination}")
    if is_symlink_path(destination):
        raise OSError(f"path must not be symlink: {destination}")
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(destination), flags, 0o600)
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError(f"path must be regular file: {destination}")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = None
            f.write(payload)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"path must not be symlink: {destination}") from exc
        if exc.errno == errno.ENXIO:
            raise OSError(f"path must be regular file: {destination}") from exc
        raise
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)


def _write_report(
    state: RunState, graph: TaskGraph, current_run_dir: Path, execution_plan: ExecutionPlan
) -> Path:
    summary = build_summary(state, graph, current_run_dir, execution_plan)
    report_path = current_run_dir / "report" / "final_report.md"
    _write_text_file(report_path, render_markdown(summary) + "\n")
    return report_path


def _runtime_config(
    config_path: Path | None,
    *,
    base: RuntimeConfig | None = None,
    **overrides: Any,
) -> RuntimeConfig:
    config = load_config(config_path) if config_path is not None else base or RuntimeConfig()
    values = {key: value for key, value in overrides.items() if value is not None}
    if "source_dir" in values:
        values["source_dir"] = str(values["source_dir"])
    config = validate_config(values, base=config)
    if config.source_dir is not None:
        config.source_dir = config.source_dir.resolve()
    return config


def _make_runtime(config: RuntimeConfig, current_run_dir: Path) -> ProcessSandboxRuntime:
    root = current_run_dir.resolve()
    runtime_cls = DockerSandboxRuntime if config.backend == "docker" else ProcessSandboxRuntime
    return runtime_cls(
        config,
        root / "workspaces",
        log_dir=root / "logs",
        artifacts_dir=root / "artifacts",
    )


async def _execute(
    graph: TaskGraph,
    config: RuntimeConfig,
    current_run_dir: Path,
    execution_plan: ExecutionPlan,
    *,
    run_id: str | None = None,
    state: RunState | None = None,
) -> RunState:
    runtime = _make_runtime(config, current_run_dir)
    reporter = ProgressReporter([ConsoleSink(console), JsonlSink(current_run_dir / "events.jsonl")])
    scheduler = ExecutionScheduler(
        graph,
        runtime,
        run_id=run_id,
        state=state,
        execution_plan=execution_plan,
        reporter=reporter,
        checkpoint=lambda current: save_state_atomic(current_run_dir, current),
        stop_grace_sec=config.stop_grace_sec,
    )
    commands = {"pause": scheduler.pause, "resume": scheduler.resume, "stop": scheduler.stop}

    def _forward(command: ControlCommand) -> None:
        commands[command]()

    consume_control_request(current_run_dir)
    watcher = asyncio.create_task(watch_control_requests(current_run_dir, _forward))
    try:
        await scheduler.run()
    finally:
        watcher.cancel()
        with suppress(asyncio.CancelledError):
            await watcher
        await runtime.shutdown()
    return scheduler.state


def _run_to_completion(
    graph: TaskGraph,
    config: RuntimeConfig,
    current_run_dir: Path,
    *,
    run_id: str | None = None,
    state: RunState | None = None,
) -> None:
    execution_plan = plan(graph)
    try:
        with run_lock(current_run_dir):
            try:
                final_state = asyncio.run(
                    _execute(
                        graph, config, current_run_dir, execution_plan, run_id=run_id, state=state
                    )
                )
            except KeyboardInterrupt:
                console.print("[yellow]Interrupted; active sandboxes were terminated[/yellow]")
                final_state = load_state(current_run_dir)
    except RunConflictError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(3) from exc
    except (StateError, SchedulerError, OSError, RuntimeError) as exc:
        console.print(f"[red]Run execution failed:[/red] {exc}")
        raise typer.Exit(2) from exc

    try:
        report_path = _write_report(final_state, graph, current_run_dir, execution_plan)
    except OSError as exc:
        console.print(f"[yellow]Warning:[/yellow] failed to write report: {exc}")
        report_path = current_run_dir / "report" / "final_report.md"
    console.print(f"run_id: [bold]{final_state.run_id}[/bold]")
    console.print(f"state: [bold]{final_state.run_status}[/bold]")
    console.print(f"report: {report_path}")
    raise typer.Exit(_exit_code_for_state(final_state))


def _load_graph_or_exit(tasks_path: Path) -> tuple[dict[str, Any], TaskGraph]:
    try:
        raw = load_task_set(tasks_path)
        return raw, build_graph(raw)
    except GraphValidationError as exc:
        console.print(f"[red]Task graph validation error:[/red] {exc}")
        raise typer.Exit(2) from exc


def _load_state_or_exit(current_run_dir: Path) -> RunState:
    try:
        return load_state(current_run_dir)
    except StateError as exc:
        console.print(f"[red]Failed to load state:[/red] {exc}")
        raise typer.Exit(2) from exc


@app.command("plan")
def plan_command(
    tasks_path: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    """Validate a task set and show its execution plan without running anything."""
    _, graph = _load_graph_or_exit(tasks_path)
    execution_plan = plan(graph)
    if as_json:
        typer.echo(json.dumps(plan_summary(execution_plan), ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    table = Table(title="Execution Plan")
    table.add_column("#", justify="right")
    table.add_column("task_id")
    table.add_column("title")
    table.add_column("group", justify="right")
    table.add_column("est_min", justify="right")
    table.add_column("depends_on")
    table.add_column("critical")
    critical = set(execution_plan.critical_path)
    for idx, task_id in enumerate(execution_plan.topological_order, start=1):
        record = graph[task_id]
        table.add_row(
            str(idx),
            task_id,
            record.title,
            str(execution_plan.group_of(task_id)),
            f"{record.estimated_duration:g}",
            ", ".join(record.depends_on) or "-",
            "*" if task_id in critical else "",
        )
    console.print(table)
    console.print(f"critical path: {' -> '.join(execution_plan.critical_path)}")
    console.print(
        f"estimated: {execution_plan.parallel_duration:g}min parallel / "
        f"{execution_plan.sequential_duration:g}min sequential "
        f"(speedup x{execution_plan.speedup})"
    )
    console.print(f"estimated cost: {execution_plan.total_estimated_cost:.2f}")


@app.command()
def run(
    tasks_path: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    home: HomeOption = _DEFAULT_HOME,
    config_path: ConfigOption = None,
    backend: BackendOption = None,
    max_instances: MaxInstancesOption = None,
    memory_limit_mb: MemoryOption = None,
    timeout_sec: TimeoutOption = None,
    source_dir: SourceDirOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Validate, plan and execute a task set in a new run directory."""
    _validate_home_or_exit(home)
    raw, graph = _load_graph_or_exit(tasks_path)
    try:
        config = _runtime_config(
            config_path,
            backend=backend,
            max_instances=max_instances,
            memory_limit_mb=memory_limit_mb,
            timeout_sec=timeout_sec,
            source_dir=source_dir,
        )
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(2) from exc

    run_id = new_run_id(datetime.now().astimezone())
    current_run_dir = run_dir(home, run_id)
    try:
        ensure_run_layout(current_run_dir)
        _write_text_file(
            current_run_dir / "tasks.yaml",
            yaml.safe_dump(raw, sort_keys=False, allow_unicode=True),
        )
        _write_text_file(
            current_run_dir / "config.yaml",
            yaml.safe_dump(config_to_dict(config), sort_keys=False, allow_unicode=True),
        )
    except OSError as exc:
        console.print(f"[red]Failed to initialize run:[/red] {exc}")
        raise typer.Exit(2) from exc
    configure_logging(current_run_dir / "logs" / "atomrun.log", level=log_level.upper())
    _run_to_completion(graph, config, current_run_dir, run_id=run_id)


@app.command()
def retry(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = _DEFAULT_HOME,
    task: Annotated[list[str] | None, typer.Option("--task")] = None,
    config_path: ConfigOption = None,
    max_instances: MaxInstancesOption = None,
    timeout_sec: TimeoutOption = None,
    log_level: LogLevelOption = "WARNING",
) -> None:
    """Re-run failed and interrupted tasks of an existing run; completed tasks are kept."""
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    current_run_dir = run_dir(home, run_id)
    previous = _load_state_or_exit(current_run_dir)
    _, graph = _load_graph_or_exit(current_run_dir / "tasks.yaml")
    try:
        snapshot = current_run_dir / "config.yaml"
        base = load_config(snapshot) if snapshot.is_file() else None
        config = _runtime_config(
            config_path, base=base, max_instances=max_instances, timeout_sec=timeout_sec
        )
        state = prepare_retry(previous, graph, task or None)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(2) from exc
    except (StateError, SchedulerError) as exc:
        console.print(f"[red]Cannot retry:[/red] {exc}")
        raise typer.Exit(2) from exc
    configure_logging(current_run_dir / "logs" / "atomrun.log", level=log_level.upper())
    _run_to_completion(graph, config, current_run_dir, state=state)


@app.command()
def status(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = _DEFAULT_HOME,
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    """Show the last checkpoint of a run."""
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    state = _load_state_or_exit(run_dir(home, run_id))

    if as_json:
        typer.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    table = Table(title=f"Run Status: {run_id} ({state.run_status})")
    table.add_column("task_id")
    table.add_column("status")
    table.add_column("duration_sec", justify="right")
    table.add_column("exit_code", justify="right")
    table.add_column("error")
    for task_id, task_run in state.tasks.items():
        table.add_row(
            task_id,
            task_run.status,
            "-" if task_run.duration_sec is None else str(task_run.duration_sec),
            "-" if task_run.exit_code is None else str(task_run.exit_code),
            escape(task_run.error or ""),
        )
    console.print(table)
    console.print(
        f"completed {len(state.completed)}/{len(state.tasks)}, failed {len(state.failed)}"
    )


@app.command()
def logs(
    run_id: Annotated[str, typer.Argument()],
    home: HomeOption = _DEFAULT_HOME,
    task: Annotated[str | None, typer.Option("--task")] = None,
    tail: Annotated[int, typer.Option("--tail", min=1)] = 100,
) -> None:
    """Print the tail of each task's stdout and stderr log."""
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    current_run_dir = run_dir(home, run_id)
    state = _load_state_or_exit(current_run_dir)
    task_ids = [task] if task else list(state.tasks)
    missing_task = False
    for task_id in task_ids:
        if task_id not in state.tasks:
            console.print(f"[yellow]unknown task:[/yellow] {task_id}")
            missing_task = True
            continue
        for stream in ("out", "err"):
            lines = tail_lines(current_run_dir / "logs" / f"{task_id}.{stream}.log", tail)
            console.rule(f"{task_id} :: std{stream}")
            console.print("\n".join(lines) if lines else "(empty)", markup=False)
    if missing_task:
        raise typer.Exit(2)


def _request(run_id: str, home: Path, command: ControlCommand) -> None:
    _validate_run_id_or_exit(run_id)
    _validate_home_or_exit(home)
    current_run_dir = run_dir(home, run_id)
    state = _load_state_or_exit(current_run_dir)
    if state.terminal:
        console.print(f"[red]Run already {state.run_status}:[/red] {run_id}")
        raise typer.Exit(2)
    try:
        write_control_request(current_run_dir, command)
    except OSError as exc:
        console.print(f"[red]Failed to request {command}:[/red] {exc}")
        raise typer.Exit(2) from exc
    console.print(f"{command} requested: [bold]{run_id}[/bold]")


@app.command()
def pause(run_id: Annotated[str, typer.Argument()], home: HomeOption = _DEFAULT_HOME) -> None:
    """Ask a running run to stop dispatching new tasks."""
    _request(run_id, home, "pause")


@app.command()
def resume(run_id: Annotated[str, typer.Argument()], home: HomeOption = _DEFAULT_HOME) -> None:
    """Ask a paused run to continue dispatching."""
    _request(run_id, home, "resume")


@app.command()
def stop(run_id: Annotated[str, typer.Argument()], home: HomeOption = _DEFAULT_HOME) -> None:
    """Ask a run to terminate its sandboxes and end as failed."""
    _request(run_id, home, "stop")


if __name__ == "__main__":
    app()
