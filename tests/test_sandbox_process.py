from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from atomrun.config.schema import RuntimeConfig
from atomrun.dag.model import TaskCommand, TaskRecord
from atomrun.exec.process import ProcessSandboxRuntime
from atomrun.exec.sandbox import LogBuffer, SandboxHandle
from atomrun.util.errors import CapacityExceededError, SandboxNotFoundError


def _task(task_id: str, run: str, **command: Any) -> TaskRecord:
    return TaskRecord(
        id=task_id,
        title=task_id,
        description=task_id,
        command=TaskCommand(run=run, **command),
        index=0,
    )


def _runtime(tmp_path: Path, **overrides: Any) -> ProcessSandboxRuntime:
    config = RuntimeConfig(**{"memory_limit_mb": None, "stop_grace_sec": 1.0, **overrides})
    return ProcessSandboxRuntime(
        config,
        tmp_path / "workspaces",
        log_dir=tmp_path / "logs",
        artifacts_dir=tmp_path / "artifacts",
    )


def test_log_buffer_keeps_only_newest_lines() -> None:
    buffer = LogBuffer(capacity=3)
    for idx in range(5):
        buffer.append("stdout", f"line {idx}")
    tail = buffer.tail(10)
    assert tail.text() == ["line 2", "line 3", "line 4"]
    assert tail.total_lines == 5
    assert buffer.tail(1).text() == ["line 4"]
    assert buffer.tail(0).text() == []


def test_log_buffer_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        LogBuffer(capacity=0)


@pytest.mark.asyncio
async def test_dispatch_captures_output_and_exit_code(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    handle = await runtime.dispatch(_task("hello", "echo out; echo err >&2; exit 3"))
    status = await runtime.wait(handle)
    assert status.phase == "exited"
    assert status.exit_code == 3
    assert not status.succeeded
    lines = runtime.fetch_log(handle, 10).lines
    assert ("stdout", "out") in [(line.stream, line.text) for line in lines]
    assert ("stderr", "err") in [(line.stream, line.text) for line in lines]
    assert "out" in (tmp_path / "logs" / "hello.out.log").read_text(encoding="utf-8")
    assert "err" in (tmp_path / "logs" / "hello.err.log").read_text(encoding="utf-8")
    assert runtime.active_count == 0


@pytest.mark.asyncio
async def test_dispatch_beyond_capacity_raises(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, max_instances=1)
    first = await runtime.dispatch(_task("slow", "sleep 5"))
    with pytest.raises(CapacityExceededError) as excinfo:
        await runtime.dispatch(_task("other", "true"))
    assert excinfo.value.capacity == 1
    await runtime.terminate(first)
    second = await runtime.dispatch(_task("other", "true"))
    assert (await runtime.wait(second)).succeeded


@pytest.mark.asyncio
async def test_terminate_is_idempotent(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    handle = await runtime.dispatch(_task("slow", "sleep 5"))
    await runtime.terminate(handle, grace_sec=0.5)
    status = runtime.poll_status(handle)
    assert status.phase == "errored"
    assert status.reason == "terminated"
    await runtime.terminate(handle, grace_sec=0.5)
    assert runtime.poll_status(handle) == status


@pytest.mark.asyncio
async def test_terminate_after_exit_keeps_exit_status(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    handle = await runtime.dispatch(_task("quick", "true"))
    await runtime.wait(handle)
    await runtime.terminate(handle)
    assert runtime.poll_status(handle).succeeded


@pytest.mark.asyncio
async def test_task_timeout_marks_sandbox_errored(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    handle = await runtime.dispatch(_task("slow", "sleep 5", timeout_sec=0.2))
    status = await asyncio.wait_for(runtime.wait(handle), timeout=5)
    assert status.phase == "errored"
    assert status.reason == "timed out"
    assert any("timed out" in line for line in runtime.fetch_log(handle, 5).text())


@pytest.mark.asyncio
async def test_spawn_failure_is_reported_as_errored_status(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, shell=str(tmp_path / "missing-shell"))
    handle = await runtime.dispatch(_task("broken", "true"))
    status = await runtime.wait(handle)
    assert status.phase == "errored"
    assert status.exit_code == 127
    assert runtime.active_count == 0


@pytest.mark.asyncio
async def test_workspaces_are_private_per_instance(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    first = await runtime.dispatch(
        _task("a", "cat note.txt && echo a > mine.txt", files={"note.txt": "from a\n"})
    )
    second = await runtime.dispatch(_task("b", "test ! -e note.txt && test ! -e mine.txt"))
    assert (await runtime.wait(first)).succeeded
    assert (await runtime.wait(second)).succeeded
    assert first.workspace != second.workspace
    assert first.workspace.parent == second.workspace.parent
    assert runtime.fetch_log(first, 5).text() == ["from a"]
    assert (first.workspace.stat().st_mode & 0o777) == 0o700


@pytest.mark.asyncio
async def test_required_files_are_copied_from_source_dir(tmp_path: Path) -> None:
    source = tmp_path / "src"
    (source / "pkg").mkdir(parents=True)
    (source / "pkg" / "data.txt").write_text("payload\n", encoding="utf-8")
    (source / "unrelated.txt").write_text("nope\n", encoding="utf-8")
    runtime = _runtime(tmp_path, source_dir=source)
    task = _task(
        "reader",
        "cat pkg/data.txt && test ! -e unrelated.txt",
        required_files=("pkg/data.txt",),
    )
    handle = await runtime.dispatch(task)
    assert (await runtime.wait(handle)).succeeded
    assert runtime.fetch_log(handle, 5).text() == ["payload"]


@pytest.mark.asyncio
async def test_missing_required_file_fails_before_spawn(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, source_dir=tmp_path)
    handle = await runtime.dispatch(_task("reader", "true", required_files=("absent.txt",)))
    status = await runtime.wait(handle)
    assert status.phase == "errored"
    assert "workspace preparation failed" in (status.reason or "")


@pytest.mark.asyncio
async def test_output_files_are_collected_as_artifacts(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    handle = await runtime.dispatch(
        _task(
            "builder",
            "mkdir -p out && echo 1 > out/a.txt && echo 2 > out/b.log",
            output_files=("out/*.txt",),
        )
    )
    assert (await runtime.wait(handle)).succeeded
    assert handle.artifact_paths == [str(Path("artifacts") / "builder" / "out" / "a.txt")]
    assert (tmp_path / "artifacts" / "builder" / "out" / "a.txt").read_text() == "1\n"


@pytest.mark.asyncio
async def test_task_env_is_passed_and_host_env_is_not(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ATOMRUN_HOST_SECRET", "leak")
    runtime = _runtime(tmp_path)
    handle = await runtime.dispatch(
        _task(
            "env",
            'echo "$MODE:$ATOMRUN_TASK_ID:${ATOMRUN_HOST_SECRET:-none}"',
            env={"MODE": "fast"},
        )
    )
    assert (await runtime.wait(handle)).succeeded
    assert runtime.fetch_log(handle, 1).text() == ["fast:env:none"]


@pytest.mark.asyncio
async def test_log_buffer_bound_applies_to_sandbox_output(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, log_buffer_lines=5)
    script = "import sys\nfor i in range(50): print(i)\n"
    handle = await runtime.dispatch(
        _task("chatty", f'"{sys.executable}" gen.py', files={"gen.py": script})
    )
    assert (await runtime.wait(handle)).succeeded
    tail = runtime.fetch_log(handle, 100)
    assert tail.text() == ["45", "46", "47", "48", "49"]
    assert tail.total_lines == 50


@pytest.mark.asyncio
async def test_unknown_handle_raises(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    ghost = SandboxHandle(instance_id="task-x-00000000", task_id="x", workspace=tmp_path)
    with pytest.raises(SandboxNotFoundError):
        runtime.poll_status(ghost)
    with pytest.raises(SandboxNotFoundError):
        await runtime.terminate(ghost)


@pytest.mark.asyncio
async def test_shutdown_terminates_active_sandboxes(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    handles = [await runtime.dispatch(_task(f"t{idx}", "sleep 5")) for idx in range(2)]
    assert runtime.active_count == 2
    await runtime.shutdown()
    assert runtime.active_count == 0
    assert all(runtime.poll_status(handle).terminal for handle in handles)


@pytest.mark.asyncio
async def test_release_forgets_finished_instance_only(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    done = await runtime.dispatch(_task("done", "true"))
    busy = await runtime.dispatch(_task("busy", "sleep 5"))
    await runtime.wait(done)

    runtime.release(done)
    runtime.release(busy)
    with pytest.raises(SandboxNotFoundError):
        runtime.poll_status(done)
    assert not runtime.poll_status(busy).terminal
    await runtime.shutdown()


@pytest.mark.skipif(sys.platform == "win32", reason="rlimits are POSIX only")
@pytest.mark.asyncio
async def test_cpu_limit_violation_is_errored_not_exited(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, cpu_time_limit_sec=1, timeout_sec=30)
    spin = f'"{sys.executable}" -c "while True: pass"'
    handle = await runtime.dispatch(_task("spin", spin))
    status = await asyncio.wait_for(runtime.wait(handle), timeout=20)
    assert status.phase == "errored"
    assert status.reason == "cpu time limit exceeded"


@pytest.mark.skipif(sys.platform == "win32", reason="rlimits are POSIX only")
@pytest.mark.asyncio
async def test_memory_limit_violation_is_errored_not_exited(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, memory_limit_mb=256)
    hog = f'"{sys.executable}" -c "bytearray(1024 * 1024 * 1024)"'
    handle = await runtime.dispatch(_task("hog", hog))
    status = await asyncio.wait_for(runtime.wait(handle), timeout=20)
    assert status.phase == "errored"
    assert "memory" in (status.reason or "")


@pytest.mark.parametrize(
    ("code", "overrides", "reason"),
    [
        (152, {"cpu_time_limit_sec": 5}, "cpu time limit exceeded"),
        (137, {"memory_limit_mb": 64}, "killed (memory limit exceeded or forced stop)"),
        (139, {"memory_limit_mb": 64}, "segmentation fault (possible memory limit)"),
    ],
)
def test_classify_exit_maps_shell_reported_limit_signals(
    tmp_path: Path, code: int, overrides: dict[str, int], reason: str
) -> None:
    status = _runtime(tmp_path, **overrides).classify_exit(code, timed_out=False, terminated=False)
    assert status.phase == "errored"
    assert status.reason == reason
    assert status.exit_code == code


def test_classify_exit_keeps_plain_exit_codes_without_limits(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path)
    assert runtime.classify_exit(137, timed_out=False, terminated=False).phase == "exited"
    status = runtime.classify_exit(
        1, timed_out=False, terminated=False, stderr_tail=["MemoryError"]
    )
    assert status.phase == "exited"
    assert status.exit_code == 1
