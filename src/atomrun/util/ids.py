"""ID generation utilities."""

import re
from datetime import datetime
from secrets import token_hex

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def new_run_id(now: datetime) -> str:
    """Create run id: YYYYMMDD_HHMMSS_<6chars>."""
    ts = now.strftime("%Y%m%d_%H%M%S")
    suffix = token_hex(3)
    return f"{ts}_{suffix}"


def new_instance_id(task_id: str) -> str:
    """Create sandbox instance id: task-<sanitized task id>-<8chars>."""
    safe = _UNSAFE_CHARS.sub("_", task_id)[:64]
    return f"task-{safe}-{token_hex(4)}"
