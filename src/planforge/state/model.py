from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, cast

from planforge.agent.metrics import UsageMetrics
from planforge.config.schema import PlanSpec
from planforge.util.coerce import (
    as_bool_map,
    as_dict,
    as_int,
    as_list_str,
    as_literal,
    as_optional_int,
    as_optional_literal,
    as_optional_str,
    as_str,
    as_str_map,
)
from planforge.work.spec import WorkSpec, default_auto_heal

NodeStatus = Literal[
    "pending", "ready", "scheduled", "running", "succeeded", "failed", "blocked", "canceled"
]
NODE_STATUS_VALUES: set[str] = {
    "pending",
    "ready",
    "scheduled",
    "running",
    "succeeded",
    "failed",
    "blocked",
    "canceled",
}
PlanStatus = Literal[
    "scaffolding",
    "pending",
    "pending-start",
    "running",
    "pausing",
    "paused",
    "resumed",
    "succeeded",
    "failed",
    "partial",
    "canceled",
]
PLAN_STATUS_VALUES: set[str] = {
    "scaffolding",
    "pending",
    "pending-start",
    "running",
    "pausing",
    "paused",
    "resumed",
    "succeeded",
    "failed",
    "partial",
    "canceled",
}
Phase = Literal["merge-fi", "setup", "prechecks", "work", "commit", "postchecks", "merge-ri"]
PHASE_ORDER: list[Phase] = [
    "merge-fi",
    "setup",
    "prechecks",
    "work",
    "commit",
    "postchecks",
    "merge-ri",
]
PHASE_VALUES: set[str] = set(PHASE_ORDER)
HEALABLE_PHASES: set[str] = {"prechecks", "work", "postchecks"}
PhaseStatus = Literal["pending", "running", "success", "failed", "skipped"]
PHASE_STATUS_VALUES: set[str] = {"pending", "running", "success", "failed", "skipped"}
FailureReason = Literal["crashed", "timeout", "execution-error", "user-canceled"]
FAILURE_REASON_VALUES: set[str] = {"crashed", "timeout", "execution-error", "user-canceled"}
TriggerType = Literal["initial", "auto-heal", "retry", "postchecks-revalidation"]
TRIGGER_TYPE_VALUES: set[str] = {"initial", "auto-heal", "retry", "postchecks-revalidation"}
AttemptStatus = Literal["running", "succeeded", "failed", "canceled"]
ATTEMPT_STATUS_VALUES: set[str] = {"running", "succeeded", "failed", "canceled"}


def _as_step_statuses(value: object) -> dict[str, PhaseStatus]:
    raw = as_dict(value)
    return {
        key: cast(PhaseStatus, val)
        for key, val in raw.items()
        if key in PHASE_VALUES and isinstance(val, str) and val in PHASE_STATUS_VALUES
    }


def _as_phase_timing(value: object) -> dict[str, dict[str, str]]:
    timing: dict[str, dict[str, str]] = {}
    for phase, entry in as_dict(value).items():
        if phase in PHASE_VALUES and isinstance(entry, dict):
            timing[phase] = as_str_map(entry) or {}
    return timing


@dataclass(slots=True)
class JobWorkSummary:
    node_id: str
    node_name: str
    commits: int = 0
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    description: str = ""

    def to_dict(self) -> dict[str, object]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "commits": self.commits,
            "files_added": self.files_added,
            "files_modified": self.files_modified,
            "files_deleted": self.files_deleted,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: object) -> JobWorkSummary | None:
        if not isinstance(data, dict):
            return None
        return cls(
            node_id=as_str(data.get("node_id")),
            node_name=as_str(data.get("node_name")),
            commits=as_int(data.get("commits")),
            files_added=as_int(data.get("files_added")),
            files_modified=as_int(data.get("files_modified")),
            files_deleted=as_int(data.get("files_deleted")),
            description=as_str(data.get("description")),
        )


@dataclass(slots=True)
class PlanWorkSummary:
    total_commits: int = 0
    total_files_added: int = 0
    total_files_modified: int = 0
    total_files_deleted: int = 0
    jobs: list[JobWorkSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "total_commits": self.total_commits,
            "total_files_added": self.total_files_added,
            "total_files_modified": self.total_files_modified,
            "total_files_deleted": self.total_files_deleted,
            "jobs": [job.to_dict() for job in self.jobs],
        }

    @classmethod
    def from_dict(cls, data: object) -> PlanWorkSummary | None:
        if not isinstance(data, dict):
            return None
        raw_jobs = data.get("jobs")
        jobs: list[JobWorkSummary] = []
        if isinstance(raw_jobs, list):
            for item in raw_jobs:
                job = JobWorkSummary.from_dict(item)
                if job is not None:
                    jobs.append(job)
        return cls(
            total_commits=as_int(data.get("total_commits")),
            total_files_added=as_int(data.get("total_files_added")),
            total_files_modified=as_int(data.get("total_files_modified")),
            total_files_deleted=as_int(data.get("total_files_deleted")),
            jobs=jobs,
        )


@dataclass(slots=True)
class AttemptRecord:
    """One execution try. Opened when the try starts and closed exactly once."""

    attempt_number: int
    trigger_type: TriggerType
    status: AttemptStatus = "running"
    started_at: str | None = None
    ended_at: str | None = None
    failed_phase: str | None = None
    error: str | None = None
    exit_code: int | None = None
    step_statuses: dict[str, PhaseStatus] = field(default_factory=dict)
    phase_timing: dict[str, dict[str, str]] = field(default_factory=dict)
    worktree_path: str | None = None
    base_commit: str | None = None
    completed_commit: str | None = None
    session_id: str | None = None
    spec_dir: str | None = None
    log_path: str | None = None
    metrics: UsageMetrics | None = None

    @property
    def is_open(self) -> bool:
        return self.status == "running"

    def close(
        self,
        status: AttemptStatus,
        at: str,
        *,
        error: str | None = None,
        failed_phase: str | None = None,
    ) -> bool:
        """Close an open record once; later calls leave it untouched and return False."""
        if not self.is_open:
            return False
        self.status = status
        self.ended_at = at
        if error is not None:
            self.error = error
        if failed_phase is not None:
            self.failed_phase = failed_phase
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            "attempt_number": self.attempt_number,
            "trigger_type": self.trigger_type,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "failed_phase": self.failed_phase,
            "error": self.error,
            "exit_code": self.exit_code,
            "step_statuses": dict(self.step_statuses),
            "phase_timing": {k: dict(v) for k, v in self.phase_timing.items()},
            "worktree_path": self.worktree_path,
            "base_commit": self.base_commit,
            "completed_commit": self.completed_commit,
            "session_id": self.session_id,
            "spec_dir": self.spec_dir,
            "log_path": self.log_path,
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> AttemptRecord:
        return cls(
            attempt_number=max(1, as_int(data.get("attempt_number"), 1)),
            trigger_type=as_literal(data.get("trigger_type"), TRIGGER_TYPE_VALUES, "initial"),
            status=as_literal(data.get("status"), ATTEMPT_STATUS_VALUES, "failed"),
            started_at=as_optional_str(data.get("started_at")),
            ended_at=as_optional_str(data.get("ended_at")),
            failed_phase=as_optional_literal(data.get("failed_phase"), PHASE_VALUES),
            error=as_optional_str(data.get("error")),
            exit_code=as_optional_int(data.get("exit_code")),
            step_statuses=_as_step_statuses(data.get("step_statuses")),
            phase_timing=_as_phase_timing(data.get("phase_timing")),
            worktree_path=as_optional_str(data.get("worktree_path")),
            base_commit=as_optional_str(data.get("base_commit")),
            completed_commit=as_optional_str(data.get("completed_commit")),
            session_id=as_optional_str(data.get("session_id")),
            spec_dir=as_optional_str(data.get("spec_dir")),
            log_path=as_optional_str(data.get("log_path")),
            metrics=UsageMetrics.from_dict(data.get("metrics")),
        )


@dataclass(slots=True)
class NodeExecutionState:
    status: NodeStatus = "pending"
    version: int = 0
    scheduled_at: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    error: str | None = None
    failure_reason: FailureReason | None = None
    base_commit: str | None = None
    completed_commit: str | None = None
    worktree_path: str | None = None
    step_statuses: dict[str, PhaseStatus] = field(default_factory=dict)
    pid: int | None = None
    auto_heal_attempted: dict[str, bool] = field(default_factory=dict)
    attempt_history: list[AttemptRecord] = field(default_factory=list)
    work_summary: JobWorkSummary | None = None
    session_id: str | None = None
    resume_from_phase: str | None = None
    merged_to_target: bool | None = None
    metrics: UsageMetrics | None = None

    @property
    def attempts(self) -> int:
        """User-visible tries; auto-heal sub-attempts share their parent's number."""
        return sum(1 for record in self.attempt_history if record.trigger_type != "auto-heal")

    @property
    def open_attempt(self) -> AttemptRecord | None:
        if self.attempt_history and self.attempt_history[-1].is_open:
            return self.attempt_history[-1]
        return None

    @property
    def last_attempt(self) -> AttemptRecord | None:
        return self.attempt_history[-1] if self.attempt_history else None

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "version": self.version,
            "scheduled_at": self.scheduled_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "failure_reason": self.failure_reason,
            "base_commit": self.base_commit,
            "completed_commit": self.completed_commit,
            "worktree_path": self.worktree_path,
            "step_statuses": dict(self.step_statuses),
            "pid": self.pid,
            "auto_heal_attempted": dict(self.auto_heal_attempted),
            "attempts": self.attempts,
            "attempt_history": [record.to_dict() for record in self.attempt_history],
            "work_summary": self.work_summary.to_dict() if self.work_summary else None,
            "session_id": self.session_id,
            "resume_from_phase": self.resume_from_phase,
            "merged_to_target": self.merged_to_target,
            "metrics": self.metrics.to_dict() if self.metrics is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> NodeExecutionState:
        raw_history = data.get("attempt_history")
        history = (
            [AttemptRecord.from_dict(item) for item in raw_history if isinstance(item, dict)]
            if isinstance(raw_history, list)
            else []
        )
        merged = data.get("merged_to_target")
        return cls(
            status=as_literal(data.get("status"), NODE_STATUS_VALUES, "pending"),
            version=as_int(data.get("version")),
            scheduled_at=as_optional_str(data.get("scheduled_at")),
            started_at=as_optional_str(data.get("started_at")),
            ended_at=as_optional_str(data.get("ended_at")),
            error=as_optional_str(data.get("error")),
            failure_reason=as_optional_literal(  # type: ignore[arg-type]
                data.get("failure_reason"), FAILURE_REASON_VALUES
            ),
            base_commit=as_optional_str(data.get("base_commit")),
            completed_commit=as_optional_str(data.get("completed_commit")),
            worktree_path=as_optional_str(data.get("worktree_path")),
            step_statuses=_as_step_statuses(data.get("step_statuses")),
            pid=as_optional_int(data.get("pid")),
            auto_heal_attempted=as_bool_map(data.get("auto_heal_attempted")),
            attempt_history=history,
            work_summary=JobWorkSummary.from_dict(data.get("work_summary")),
            session_id=as_optional_str(data.get("session_id")),
            resume_from_phase=as_optional_literal(data.get("resume_from_phase"), PHASE_VALUES),
            merged_to_target=merged if isinstance(merged, bool) else None,
            metrics=UsageMetrics.from_dict(data.get("metrics")),
        )


@dataclass(slots=True)
class JobNode:
    id: str
    producer_id: str
    name: str
    task: str
    work: WorkSpec | None = None
    prechecks: WorkSpec | None = None
    postchecks: WorkSpec | None = None
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    base_branch: str | None = None
    group: str | None = None
    group_id: str | None = None
    expects_no_changes: bool = False
    auto_heal: bool | None = None

    @property
    def auto_heal_enabled(self) -> bool:
        if self.auto_heal is not None:
            return self.auto_heal
        return default_auto_heal(self.work)

    def spec_for_phase(self, phase: str) -> WorkSpec | None:
        if phase == "prechecks":
            return self.prechecks
        if phase == "postchecks":
            return self.postchecks
        if phase == "work":
            return self.work
        return None


@dataclass(slots=True)
class GroupInstance:
    id: str
    name: str
    path: str
    parent_group_id: str | None = None
    child_group_ids: list[str] = field(default_factory=list)
    node_ids: list[str] = field(default_factory=list)
    all_node_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "parent_group_id": self.parent_group_id,
            "child_group_ids": list(self.child_group_ids),
            "node_ids": list(self.node_ids),
            "all_node_ids": list(self.all_node_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> GroupInstance:
        return cls(
            id=as_str(data.get("id")),
            name=as_str(data.get("name")),
            path=as_str(data.get("path")),
            parent_group_id=as_optional_str(data.get("parent_group_id")),
            child_group_ids=as_list_str(data.get("child_group_ids")),
            node_ids=as_list_str(data.get("node_ids")),
            all_node_ids=as_list_str(data.get("all_node_ids")),
        )


@dataclass(slots=True)
class GroupExecutionState:
    status: PlanStatus = "pending"
    version: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    started_at: str | None = None
    ended_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "version": self.version,
            "counts": dict(self.counts),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> GroupExecutionState:
        counts = {
            k: v for k, v in as_dict(data.get("counts")).items() if isinstance(v, int)
        }
        return cls(
            status=as_literal(data.get("status"), PLAN_STATUS_VALUES, "pending"),
            version=as_int(data.get("version")),
            counts=counts,
            started_at=as_optional_str(data.get("started_at")),
            ended_at=as_optional_str(data.get("ended_at")),
        )


@dataclass(slots=True)
class StateHistoryEntry:
    from_status: str
    to_status: str
    at: str
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "from": self.from_status,
            "to": self.to_status,
            "at": self.at,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> StateHistoryEntry:
        return cls(
            from_status=as_str(data.get("from")),
            to_status=as_str(data.get("to")),
            at=as_str(data.get("at")),
            reason=as_optional_str(data.get("reason")),
        )


@dataclass(slots=True)
class SnapshotInfo:
    """Branch that collects leaf merges until one final merge into the target.

    ``merge_status`` stays ``pending`` while leaves merge into ``branch``;
    the final merge sets it to ``success`` (branch deleted) or ``failed``
    (branch kept for a manual merge).
    """

    branch: str
    worktree_path: str
    base_commit: str
    merge_status: PhaseStatus = "pending"
    merged_commit: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "branch": self.branch,
            "worktree_path": self.worktree_path,
            "base_commit": self.base_commit,
            "merge_status": self.merge_status,
            "merged_commit": self.merged_commit,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: object) -> SnapshotInfo | None:
        if not isinstance(data, dict):
            return None
        branch = as_str(data.get("branch"))
        if not branch:
            return None
        return cls(
            branch=branch,
            worktree_path=as_str(data.get("worktree_path")),
            base_commit=as_str(data.get("base_commit")),
            merge_status=as_literal(data.get("merge_status"), PHASE_STATUS_VALUES, "pending"),
            merged_commit=as_optional_str(data.get("merged_commit")),
            error=as_optional_str(data.get("error")),
        )


@dataclass(slots=True)
class PlanInstance:
    id: str
    spec: PlanSpec
    nodes: dict[str, JobNode]
    producer_id_to_node_id: dict[str, str]
    roots: list[str]
    leaves: list[str]
    node_states: dict[str, NodeExecutionState]
    repo_path: str
    base_branch: str
    target_branch: str | None
    worktree_root: str
    created_at: str
    groups: dict[str, GroupInstance] = field(default_factory=dict)
    group_states: dict[str, GroupExecutionState] = field(default_factory=dict)
    group_path_to_id: dict[str, str] = field(default_factory=dict)
    parent_plan_id: str | None = None
    parent_node_id: str | None = None
    base_commit_at_start: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    state_version: int = 0
    is_paused: bool = False
    scaffolding: bool = False
    clean_up_successful_work: bool = True
    max_parallel: int = 4
    env: dict[str, str] | None = None
    resume_after_plan: str | None = None
    state_history: list[StateHistoryEntry] = field(default_factory=list)
    snapshot: SnapshotInfo | None = None
    work_summary: PlanWorkSummary | None = None
    verify_status: PhaseStatus | None = None
    deleted: bool = False

    @property
    def name(self) -> str:
        return self.spec.name

    def node_by_producer_id(self, producer_id: str) -> JobNode | None:
        node_id = self.producer_id_to_node_id.get(producer_id)
        return self.nodes.get(node_id) if node_id else None
