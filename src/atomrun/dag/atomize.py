"""Boundary with the external decomposition service."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from loguru import logger

from atomrun.dag.build import build_graph
from atomrun.dag.model import TaskGraph
from atomrun.util.errors import MalformedTaskError

Decomposer = Callable[[str, Mapping[str, Any] | None], object]


def atomize(
    description: str,
    decomposer: Decomposer,
    context: Mapping[str, Any] | None = None,
) -> TaskGraph:
    """Ask the decomposer for a raw task set and validate it into a TaskGraph."""
    raw = decomposer(description, context)
    if not isinstance(raw, Mapping):
        raise MalformedTaskError("tasks", None, "decomposer returned a non-mapping result")
    graph = build_graph(raw)
    logger.info(f"Atomized project into {len(graph)} tasks")
    return graph
