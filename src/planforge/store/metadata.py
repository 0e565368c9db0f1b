"""On-disk shape of ``plan.json``.

Metadata is kept small: node specs live in their own files under
``specs/<node_id>/`` and are referenced only through ``has_*`` flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from planforge.config.schema import PlanSpec
from planforge.state.model import (
    PHASE_STATUS_VALUES,
    GroupExecutionState,
    GroupInstance,
    NodeExecutionState,
    PhaseStatus,
    PlanWorkSummary,
    SnapshotInfo,
    StateHistoryEntry,
)
from planforge.util.coerce import (
    as_bool,
    as_dict,
    as_int,
    as_list_str,
    as_optional_bool,
    as_optional_literal,
    as_optional_str,
    as_str,
    as_str_map,
)

METADATA_FORMAT_VERSION = 1


@dataclass(slots=True)
class StoredJobMetadata:
    id: str
    producer_id: str
    name: str
    task: str = ""
    dependencies: list[str] = field(default_factory=list)
    group: str | None = None
    has_work: bool = False
    has_prechecks: bool = False
    has_postchecks: bool = False
    work_ref: str | None = None
    prechecks_ref: str | None = None
    postchecks_ref: str | None = None
    auto_heal: bool | None = None
    expects_no_changes: bool = False
    base_branch: str | None = None

    def has_phase(self, phase: str) -> bool:
        return bool(getattr(self, f"has_{phase}", False))

    def set_phase(self, phase: str, present: bool) -> None:
        setattr(self, f"has_{phase}", present)
        setattr(self, f"{phase}_ref", f"specs/{self.id}/current/{phase}.json" if present else None)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "producer_id": self.producer_id,
            "name": self.name,
            "task": self.task,
            "dependencies": list(self.dependencies),
            "group": self.group,
            "has_work": self.has_work,
            "has_prechecks": self.has_prechecks,
            "has_postchecks": self.has_postchecks,
            "work_ref": self.work_ref,
            "prechecks_ref": self.prechecks_ref,
            "postchecks_ref": self.postchecks_ref,
            "auto_heal": self.auto_heal,
            "expects_no_changes": self.expects_no_changes,
            "base_branch": self.base_branch,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> StoredJobMetadata:
        producer_id = as_str(data.get("producer_id"))
        return cls(
            id=as_str(data.get("id")),
            producer_id=producer_id,
            name=as_str(data.get("name"), producer_id),
            task=as_str(data.get("task")),
            dependencies=as_list_str(data.get("dependencies")),
            group=as_optional_str(data.get("group")),
            has_work=as_bool(data.get("has_work")),
            has_prechecks=as_bool(data.get("has_prechecks")),
            has_postchecks=as_bool(data.get("has_postchecks")),
            work_ref=as_optional_str(data.get("work_ref")),
            prechecks_ref=as_optional_str(data.get("prechecks_ref")),
            postchecks_ref=as_optional_str(data.get("postchecks_ref")),
            auto_heal=as_optional_bool(data.get("auto_heal")),
            expects_no_changes=as_bool(data.get("expects_no_changes")),
            base_branch=as_optional_str(data.get("base_branch")),
        )


@dataclass(slots=True)
class StoredPlanMetadata:
    id: str
    spec: PlanSpec
    repo_path: str
    base_branch: str
    worktree_root: str
    created_at: str
    jobs: list[StoredJobMetadata] = field(default_factory=list)
    producer_id_to_node_id: dict[str, str] = field(default_factory=dict)
    roots: list[str] = field(default_factory=list)
    leaves: list[str] = field(default_factory=list)
    node_states: dict[str, NodeExecutionState] = field(default_factory=dict)
    groups: dict[str, GroupInstance] = field(default_factory=dict)
    group_states: dict[str, GroupExecutionState] = field(default_factory=dict)
    group_path_to_id: dict[str, str] = field(default_factory=dict)
    parent_plan_id: str | None = None
    parent_node_id: str | None = None
    target_branch: str | None = None
    base_commit_at_start: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    state_version: int = 0
    clean_up_successful_work: bool = True
    max_parallel: int = 0
    is_paused: bool = False
    scaffolding: bool = False
    env: dict[str, str] | None = None
    resume_after_plan: str | None = None
    state_history: list[StateHistoryEntry] = field(default_factory=list)
    snapshot: SnapshotInfo | None = None
    work_summary: PlanWorkSummary | None = None
    verify_status: PhaseStatus | None = None
    deleted: bool = False

    def job(self, node_id: str) -> StoredJobMetadata | None:
        for job in self.jobs:
            if job.id == node_id:
                return job
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "format_version": METADATA_FORMAT_VERSION,
            "id": self.id,
            "spec": self.spec.to_dict(include_jobs=False),
            "jobs": [job.to_dict() for job in self.jobs],
            "producer_id_to_node_id": dict(self.producer_id_to_node_id),
            "roots": list(self.roots),
            "leaves": list(self.leaves),
            "node_states": {k: v.to_dict() for k, v in self.node_states.items()},
            "groups": {k: v.to_dict() for k, v in self.groups.items()},
            "group_states": {k: v.to_dict() for k, v in self.group_states.items()},
            "group_path_to_id": dict(self.group_path_to_id),
            "parent_plan_id": self.parent_plan_id,
            "parent_node_id": self.parent_node_id,
            "repo_path": self.repo_path,
            "base_branch": self.base_branch,
            "target_branch": self.target_branch,
            "base_commit_at_start": self.base_commit_at_start,
            "worktree_root": self.worktree_root,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "state_version": self.state_version,
            "clean_up_successful_work": self.clean_up_successful_work,
            "max_parallel": self.max_parallel,
            "is_paused": self.is_paused,
            "scaffolding": self.scaffolding,
            "env": self.env,
            "resume_after_plan": self.resume_after_plan,
            "state_history": [entry.to_dict() for entry in self.state_history],
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "work_summary": self.work_summary.to_dict() if self.work_summary else None,
            "verify_status": self.verify_status,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> StoredPlanMetadata:
        raw_jobs = data.get("jobs")
        jobs = (
            [StoredJobMetadata.from_dict(as_dict(j)) for j in raw_jobs if isinstance(j, dict)]
            if isinstance(raw_jobs, list)
            else []
        )
        raw_history = data.get("state_history")
        history = (
            [StateHistoryEntry.from_dict(as_dict(h)) for h in raw_history if isinstance(h, dict)]
            if isinstance(raw_history, list)
            else []
        )
        spec = PlanSpec.from_dict(as_dict(data.get("spec")))
        return cls(
            id=as_str(data.get("id")),
            spec=spec,
            repo_path=as_str(data.get("repo_path")),
            base_branch=as_str(data.get("base_branch"), spec.base_branch),
            worktree_root=as_str(data.get("worktree_root")),
            created_at=as_str(data.get("created_at")),
            jobs=jobs,
            producer_id_to_node_id=as_str_map(data.get("producer_id_to_node_id")) or {},
            roots=as_list_str(data.get("roots")),
            leaves=as_list_str(data.get("leaves")),
            node_states={
                k: NodeExecutionState.from_dict(as_dict(v))
                for k, v in as_dict(data.get("node_states")).items()
                if isinstance(v, dict)
            },
            groups={
                k: GroupInstance.from_dict(as_dict(v))
                for k, v in as_dict(data.get("groups")).items()
                if isinstance(v, dict)
            },
            group_states={
                k: GroupExecutionState.from_dict(as_dict(v))
                for k, v in as_dict(data.get("group_states")).items()
                if isinstance(v, dict)
            },
            group_path_to_id=as_str_map(data.get("group_path_to_id")) or {},
            parent_plan_id=as_optional_str(data.get("parent_plan_id")),
            parent_node_id=as_optional_str(data.get("parent_node_id")),
            target_branch=as_optional_str(data.get("target_branch")),
            base_commit_at_start=as_optional_str(data.get("base_commit_at_start")),
            started_at=as_optional_str(data.get("started_at")),
            ended_at=as_optional_str(data.get("ended_at")),
            state_version=as_int(data.get("state_version")),
            clean_up_successful_work=as_bool(data.get("clean_up_successful_work"), True),
            max_parallel=as_int(data.get("max_parallel")),
            is_paused=as_bool(data.get("is_paused")),
            scaffolding=as_bool(data.get("scaffolding")),
            env=as_str_map(data.get("env")),
            resume_after_plan=as_optional_str(data.get("resume_after_plan")),
            state_history=history,
            snapshot=SnapshotInfo.from_dict(data.get("snapshot")),
            work_summary=PlanWorkSummary.from_dict(data.get("work_summary")),
            verify_status=as_optional_literal(  # type: ignore[arg-type]
                data.get("verify_status"), PHASE_STATUS_VALUES
            ),
            deleted=as_bool(data.get("deleted")),
        )
