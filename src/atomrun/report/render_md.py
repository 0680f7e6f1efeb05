from __future__ import annotations

from typing import Any


def _fmt_minutes(value: float) -> str:
    if value >= 60:
        return f"{value / 60:.1f}h"
    return f"{value:g}min"


def _render_plan(plan: dict[str, Any], lines: list[str]) -> None:
    lines.append("## Execution Plan")
    lines.append("")
    lines.append(f"- critical path: {' -> '.join(plan['critical_path'])}")
    lines.append(f"- critical duration: {_fmt_minutes(plan['critical_duration'])}")
    lines.append(
        f"- estimated time: {_fmt_minutes(plan['parallel_duration'])} parallel / "
        f"{_fmt_minutes(plan['sequential_duration'])} sequential "
        f"(speedup x{plan['speedup']})"
    )
    lines.append(f"- estimated cost: {plan['total_estimated_cost']:.2f}")
    lines.append("")
    lines.append("| group | tasks |")
    lines.append("|---:|---|")
    for idx, group in enumerate(plan["parallel_groups"]):
        lines.append(f"| {idx} | {', '.join(group)} |")
    lines.append("")
    if plan["cost_by_category"]:
        lines.append("| category | tasks | cost |")
        lines.append("|---|---:|---:|")
        for category, row in plan["cost_by_category"].items():
            lines.append(f"| {category} | {row['count']} | {row['cost']:.2f} |")
        lines.append("")


def render_markdown(summary: dict[str, Any]) -> str:
    run = summary["run"]
    tasks = summary["tasks"]
    problems = summary["problems"]
    artifacts = summary["artifacts"]

    lines: list[str] = []
    lines.append("# Final Run Report")
    lines.append("")
    lines.append("## Run Overview")
    lines.append("")
    lines.append(f"- run_id: `{run['run_id']}`")
    lines.append(f"- title: {run['title'] or '(none)'}")
    status = f"{run['status']} (stopped)" if run["stopped"] else run["status"]
    lines.append(f"- status: **{status}**")
    lines.append(f"- progress: {run['completed']}/{run['total']} completed, {run['failed']} failed")
    lines.append(f"- started: {run['started_at']}")
    lines.append(f"- ended: {run['ended_at']}")
    lines.append(f"- elapsed_sec: {run['elapsed_sec']}")
    lines.append("")
    if summary.get("plan"):
        _render_plan(summary["plan"], lines)
    lines.append("## Task Results")
    lines.append("")
    lines.append("| id | title | status | duration_sec | exit_code | instance |")
    lines.append("|---|---|---:|---:|---:|---|")
    for row in tasks:
        lines.append(
            f"| {row['id']} | {row['title']} | {row['status']} | "
            f"{row['duration_sec']} | {row['exit_code']} | {row['instance_id'] or ''} |"
        )
    lines.append("")
    lines.append("## Failed / Blocked Details")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['id']} ({row['status']})")
            if row["error"]:
                lines.append(f"- error: `{row['error']}`")
            if row["blocked_by"]:
                lines.append(f"- blocked by: {', '.join(row['blocked_by'])}")
            if row["status"] == "failed":
                lines.append("- log tail:")
                lines.append("```")
                lines.extend(row["log_tail"] or ["(empty)"])
                lines.append("```")
            lines.append("")
    else:
        lines.append("No failed or blocked tasks.")
        lines.append("")
    lines.append("## Artifacts")
    lines.append("")
    if artifacts:
        for artifact in artifacts:
            lines.append(f"- `{artifact['path']}` (task: `{artifact['task_id']}`)")
    else:
        lines.append("- (none)")
    lines.append("")
    return "\n".join(lines)
