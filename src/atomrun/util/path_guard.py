from __future__ import annotations

import stat
from pathlib import Path, PurePosixPath


def is_symlink_path(path: Path, *, fail_closed: bool = True) -> bool:
    try:
        return path.is_symlink()
    except FileNotFoundError:
        return False
    except (OSError, RuntimeError):
        return fail_closed


def has_symlink_ancestor(path: Path) -> bool:
    current = path.parent
    while True:
        try:
            meta = current.lstat()
        except FileNotFoundError:
            pass
        except (OSError, RuntimeError):
            return True
        else:
            if stat.S_ISLNK(meta.st_mode):
                return True
        if current == current.parent:
            return False
        current = current.parent


def is_safe_relative_path(value: str) -> bool:
    """Relative, non-empty, no ``..`` and no NUL: safe to join under a workspace root."""
    if not value or "\x00" in value or "\\" in value:
        return False
    rel = PurePosixPath(value)
    if rel.is_absolute() or not rel.parts:
        return False
    return all(part not in ("..", "") for part in rel.parts)


def resolve_inside(root: Path, rel: str) -> Path | None:
    """Join ``rel`` under ``root`` and return it only if it stays inside ``root``."""
    if not is_safe_relative_path(rel):
        return None
    candidate = root / rel
    try:
        resolved_root = root.resolve()
        resolved = candidate.resolve()
    except (OSError, RuntimeError):
        return None
    if resolved != resolved_root and resolved_root not in resolved.parents:
        return None
    return candidate

