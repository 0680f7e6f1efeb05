"""Docker sandbox backend: ``docker run`` in the foreground, one container per task."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence

from loguru import logger

from atomrun.dag.model import TaskRecord
from atomrun.exec.process import ProcessSandboxRuntime
from atomrun.exec.sandbox import SandboxHandle, SandboxStatus
from atomrun.exec.timeout import stop_process

_DOCKER_OOM_EXIT = 137
_DOCKER_RUN_ERROR_EXITS = {
    125: "docker daemon error",
    126: "command not executable",
    127: "command not found",
}


def container_name(handle: SandboxHandle) -> str:
    return f"atomrun-{handle.instance_id}"


class DockerSandboxRuntime(ProcessSandboxRuntime):
    """
    Same workspace, capture and bookkeeping as the process backend; the child
    is ``docker run --rm`` with the workspace bind-mounted at ``/workspace``.

    Limits are enforced by docker (``--memory``, ``--cpus``). Network is
    ``none`` unless the task declares it needs external repository access.
    """

    docker_bin = "docker"
    enforces_network_isolation = True

    def build_argv(self, task: TaskRecord, handle: SandboxHandle) -> list[str]:
        argv = [
            self.docker_bin,
            "run",
            "--rm",
            "--name",
            container_name(handle),
            "-v",
            f"{handle.workspace.resolve()}:/workspace",
            "-w",
            "/workspace",
            f"--cpus={self.config.cpus:g}",
            "--network=bridge" if task.command.network else "--network=none",
        ]
        if self.config.memory_limit_mb is not None:
            argv.append(f"--memory={self.config.memory_limit_mb}m")
        for key, value in task.command.env.items():
            argv.extend(["-e", f"{key}={value}"])
        argv.extend(["-e", f"ATOMRUN_TASK_ID={task.id}"])
        argv.extend([self.config.docker_image, "sh", "-c", task.command.run])
        return argv

    def preexec(self) -> Callable[[], None] | None:
        return None

    async def stop(
        self, proc: asyncio.subprocess.Process, handle: SandboxHandle, grace_sec: float
    ) -> None:
        name = container_name(handle)
        try:
            killer = await asyncio.create_subprocess_exec(
                self.docker_bin,
                "stop",
                "--time",
                str(max(int(grace_sec), 0)),
                name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(killer.wait(), timeout=grace_sec + 5.0)
        except (OSError, TimeoutError) as exc:
            logger.warning(f"docker stop failed for {name}: {exc}")
        await stop_process(proc, grace_sec)

    def classify_exit(
        self,
        returncode: int,
        *,
        timed_out: bool,
        terminated: bool,
        stderr_tail: Sequence[str] = (),
    ) -> SandboxStatus:
        if not timed_out and not terminated:
            if returncode == _DOCKER_OOM_EXIT:
                return SandboxStatus.errored("container killed (out of memory)", exit_code=returncode)
            if returncode in _DOCKER_RUN_ERROR_EXITS:
                return SandboxStatus.errored(_DOCKER_RUN_ERROR_EXITS[returncode], exit_code=returncode)
        return super().classify_exit(
            returncode, timed_out=timed_out, terminated=terminated, stderr_tail=stderr_tail
        )
