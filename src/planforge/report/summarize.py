from __future__ import annotations

from pathlib import Path

from planforge.state.model import PlanInstance, PlanWorkSummary
from planforge.state.status import compute_plan_status, compute_progress, compute_status_counts
from planforge.state.status import merge_work_summaries
from planforge.util.fs import tail_lines
from planforge.util.time import elapsed_between

PROBLEM_STATUSES = {"failed", "blocked", "canceled"}
LOG_TAIL_LINES = 50


def build_summary(plan: PlanInstance) -> dict[str, object]:
    states = list(plan.node_states.values())
    node_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []

    for node_id, node in plan.nodes.items():
        state = plan.node_states[node_id]
        last = state.last_attempt
        node_rows.append(
            {
                "id": node_id,
                "producer_id": node.producer_id,
                "name": node.name,
                "status": state.status,
                "attempts": state.attempts,
                "duration_sec": elapsed_between(state.started_at, state.ended_at),
                "completed_commit": state.completed_commit,
                "merged_to_target": state.merged_to_target,
                "log_path": last.log_path if last is not None else None,
            }
        )
        if state.status in PROBLEM_STATUSES:
            log_tail = (
                tail_lines(Path(last.log_path), LOG_TAIL_LINES)
                if last is not None and last.log_path
                else []
            )
            problem_rows.append(
                {
                    "id": node_id,
                    "name": node.name,
                    "status": state.status,
                    "failed_phase": last.failed_phase if last is not None else None,
                    "failure_reason": state.failure_reason,
                    "error": state.error,
                    "log_tail": log_tail,
                }
            )

    # Node records are newer than the plan total when a save was interrupted.
    work = merge_work_summaries(
        [
            plan.work_summary,
            *(PlanWorkSummary(jobs=[s.work_summary]) for s in states if s.work_summary),
        ]
    )
    snapshot = plan.snapshot
    return {
        "plan": {
            "id": plan.id,
            "name": plan.name,
            "status": compute_plan_status(
                states, has_started=plan.started_at is not None, is_paused=plan.is_paused
            ),
            "created_at": plan.created_at,
            "started_at": plan.started_at,
            "ended_at": plan.ended_at,
            "base_branch": plan.base_branch,
            "target_branch": plan.target_branch,
            "max_parallel": plan.max_parallel,
            "repo_path": plan.repo_path,
            "verify_status": plan.verify_status,
            "snapshot": snapshot.to_dict() if snapshot is not None else None,
        },
        "counts": compute_status_counts(states),
        "progress": compute_progress(states),
        "nodes": node_rows,
        "problems": problem_rows,
        "work_summary": work.to_dict() if work.jobs else None,
    }
