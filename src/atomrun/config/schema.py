from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

Backend = Literal["process", "docker"]


@dataclass(slots=True)
class RuntimeConfig:
    backend: Backend = "process"
    max_instances: int = 10
    memory_limit_mb: int | None = 512
    cpus: float = 1.0
    cpu_time_limit_sec: int | None = None
    timeout_sec: float | None = None
    log_buffer_lines: int = 1000
    stop_grace_sec: float = 5.0
    poll_interval_sec: float = 0.1
    docker_image: str = "node:18"
    shell: str = "/bin/sh"
    source_dir: Path | None = None
