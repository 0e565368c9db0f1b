from __future__ import annotations

from typing import Any


def _bool_mark(value: bool | None) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


def _short(commit: str | None) -> str:
    return f"`{commit[:8]}`" if commit else "-"


def render_markdown(summary: dict[str, Any]) -> str:
    plan = summary["plan"]
    counts = summary["counts"]
    nodes = summary["nodes"]
    problems = summary["problems"]
    work = summary["work_summary"]

    lines: list[str] = []
    lines.append("# Plan Report")
    lines.append("")
    lines.append("## Plan Overview")
    lines.append("")
    lines.append(f"- plan_id: `{plan['id']}`")
    lines.append(f"- name: {plan['name']}")
    lines.append(f"- status: **{plan['status']}**")
    lines.append(f"- progress: {summary['progress']:.0%}")
    lines.append(f"- created: {plan['created_at']}")
    lines.append(f"- started: {plan['started_at'] or '-'}")
    lines.append(f"- ended: {plan['ended_at'] or '-'}")
    lines.append(f"- branches: `{plan['base_branch']}` -> `{plan['target_branch'] or '-'}`")
    lines.append(f"- max_parallel: {plan['max_parallel']}")
    if plan["verify_status"]:
        lines.append(f"- verify-ri: {plan['verify_status']}")
    snapshot = plan["snapshot"]
    if snapshot:
        line = f"- final merge: {snapshot['merge_status']} (snapshot `{snapshot['branch']}`)"
        if snapshot["error"]:
            line += f": {snapshot['error']}"
        lines.append(line)
    lines.append(f"- repo: `{plan['repo_path']}`")
    lines.append("")
    lines.append(
        "- counts: " + ", ".join(f"{status}={count}" for status, count in counts.items() if count)
    )
    lines.append("")
    lines.append("## Job Results")
    lines.append("")
    lines.append("| job | status | attempts | duration_sec | commit | merged |")
    lines.append("|---|---:|---:|---:|---|---:|")
    for row in nodes:
        duration = row["duration_sec"] if row["duration_sec"] is not None else "-"
        lines.append(
            f"| {row['name']} | {row['status']} | {row['attempts']} | {duration} | "
            f"{_short(row['completed_commit'])} | {_bool_mark(row['merged_to_target'])} |"
        )
    lines.append("")
    lines.append("## Failed / Blocked / Canceled Details")
    lines.append("")
    if problems:
        for row in problems:
            lines.append(f"### {row['name']} ({row['status']})")
            if row["failed_phase"]:
                lines.append(f"- phase: `{row['failed_phase']}`")
            if row["failure_reason"]:
                lines.append(f"- reason: `{row['failure_reason']}`")
            if row["error"]:
                lines.append(f"- error: {row['error']}")
            if row["status"] == "failed":
                lines.append("- log tail:")
                lines.append("```")
                lines.extend(row["log_tail"] or ["(empty)"])
                lines.append("```")
            lines.append("")
    else:
        lines.append("No failed/blocked/canceled jobs.")
        lines.append("")
    lines.append("## Work Summary")
    lines.append("")
    if work and work["jobs"]:
        lines.append(
            f"- commits: {work['total_commits']}, added: {work['total_files_added']}, "
            f"modified: {work['total_files_modified']}, deleted: {work['total_files_deleted']}"
        )
        for job in work["jobs"]:
            lines.append(
                f"- {job['node_name']}: +{job['files_added']} ~{job['files_modified']} "
                f"-{job['files_deleted']}"
            )
    else:
        lines.append("- (none)")
    lines.append("")
    return "\n".join(lines)
