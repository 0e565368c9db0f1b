from __future__ import annotations

from collections.abc import Iterable

from planforge.state.model import (
    NodeExecutionState,
    GroupExecutionState,
    JobWorkSummary,
    PlanStatus,
    PlanWorkSummary,
)

TERMINAL_NODE_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "blocked", "canceled"})
TERMINAL_PLAN_STATUSES: frozenset[str] = frozenset({"succeeded", "failed", "partial", "canceled"})


def compute_status_counts(states: Iterable[NodeExecutionState]) -> dict[str, int]:
    counts = {
        "pending": 0,
        "ready": 0,
        "scheduled": 0,
        "running": 0,
        "succeeded": 0,
        "failed": 0,
        "blocked": 0,
        "canceled": 0,
    }
    for state in states:
        counts[state.status] = counts.get(state.status, 0) + 1
    return counts


def compute_progress(states: Iterable[NodeExecutionState]) -> float:
    total = 0
    done = 0
    for state in states:
        total += 1
        if state.status in TERMINAL_NODE_STATUSES:
            done += 1
    if total == 0:
        return 0.0
    return done / total


def compute_plan_status(
    states: Iterable[NodeExecutionState],
    *,
    has_started: bool,
    is_paused: bool = False,
) -> PlanStatus:
    """Derive the plan status from node states.

    Rules apply in order: paused, active work, waiting work, then the
    terminal aggregate. Blocked nodes never decide the outcome on their own
    unless nothing else ran.
    """
    counts = compute_status_counts(states)
    non_terminal = counts["pending"] + counts["ready"] + counts["scheduled"] + counts["running"]

    if is_paused and non_terminal > 0:
        if counts["running"] + counts["scheduled"] > 0:
            return "pausing"
        return "paused"
    if counts["running"] + counts["scheduled"] > 0:
        return "running"
    if counts["ready"] + counts["pending"] > 0:
        return "running" if has_started else "pending"

    if counts["canceled"] > 0:
        return "canceled"
    if counts["failed"] > 0 and counts["succeeded"] > 0:
        return "partial"
    if counts["failed"] > 0:
        return "failed"
    if counts["succeeded"] > 0:
        return "succeeded"
    return "failed"


def compute_group_state(
    member_states: list[NodeExecutionState],
    previous: GroupExecutionState | None = None,
) -> GroupExecutionState:
    counts = compute_status_counts(member_states)
    started = [s.started_at for s in member_states if s.started_at]
    ended = [s.ended_at for s in member_states if s.ended_at]
    status = compute_plan_status(member_states, has_started=bool(started))
    all_terminal = bool(member_states) and all(
        s.status in TERMINAL_NODE_STATUSES for s in member_states
    )
    version = previous.version if previous is not None else 0
    group = GroupExecutionState(
        status=status,
        version=version,
        counts=counts,
        started_at=min(started) if started else None,
        ended_at=max(ended) if all_terminal and ended else None,
    )
    if previous is None or previous.to_dict() != group.to_dict():
        group.version = version + 1
    return group


def append_work_summary(
    plan_summary: PlanWorkSummary | None, job: JobWorkSummary
) -> PlanWorkSummary:
    """Add or replace one job's contribution, keeping totals consistent."""
    summary = plan_summary or PlanWorkSummary()
    summary.jobs = [item for item in summary.jobs if item.node_id != job.node_id]
    summary.jobs.append(job)
    _recompute_totals(summary)
    return summary


def _recompute_totals(summary: PlanWorkSummary) -> None:
    summary.total_commits = sum(job.commits for job in summary.jobs)
    summary.total_files_added = sum(job.files_added for job in summary.jobs)
    summary.total_files_modified = sum(job.files_modified for job in summary.jobs)
    summary.total_files_deleted = sum(job.files_deleted for job in summary.jobs)


def merge_work_summaries(summaries: Iterable[PlanWorkSummary | None]) -> PlanWorkSummary:
    """Combine summaries into a new one; a later entry for the same job wins."""
    merged = PlanWorkSummary()
    for summary in summaries:
        if summary is None:
            continue
        for job in summary.jobs:
            merged = append_work_summary(merged, job)
    return merged
