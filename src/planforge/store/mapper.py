"""Translate between stored metadata and the live PlanInstance."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from planforge.dag.build import compute_dependents, compute_roots_and_leaves
from planforge.state.model import (
    NODE_STATUS_VALUES,
    GroupInstance,
    JobNode,
    NodeExecutionState,
    PlanInstance,
)
from planforge.store.fs_store import SPEC_PHASES, FileSystemPlanStore
from planforge.store.metadata import StoredJobMetadata, StoredPlanMetadata
from planforge.util.ids import new_node_id
from planforge.work.spec import WorkSpec

NodeSpecs = Mapping[str, Mapping[str, WorkSpec | None]]


def normalize_node_status(raw: str) -> str:
    return raw if raw in NODE_STATUS_VALUES else "pending"


def build_groups(nodes: Mapping[str, JobNode]) -> tuple[dict[str, GroupInstance], dict[str, str]]:
    """Create the group tree from ``group`` paths like ``backend/api``.

    Every path prefix becomes a group; ``all_node_ids`` collects members of
    the group and all of its descendants.
    """
    groups: dict[str, GroupInstance] = {}
    path_to_id: dict[str, str] = {}

    def _ensure(path: str) -> GroupInstance:
        group_id = path_to_id.get(path)
        if group_id is not None:
            return groups[group_id]
        parent_path, _, name = path.rpartition("/")
        parent = _ensure(parent_path) if parent_path else None
        group = GroupInstance(
            id=new_node_id(),
            name=name,
            path=path,
            parent_group_id=parent.id if parent else None,
        )
        groups[group.id] = group
        path_to_id[path] = group.id
        if parent is not None:
            parent.child_group_ids.append(group.id)
        return group

    for node in nodes.values():
        if not node.group:
            continue
        path = "/".join(part for part in node.group.split("/") if part)
        if not path:
            continue
        group = _ensure(path)
        group.node_ids.append(node.id)
        node.group_id = group.id
        current: GroupInstance | None = group
        while current is not None:
            current.all_node_ids.append(node.id)
            current = groups.get(current.parent_group_id) if current.parent_group_id else None
    return groups, path_to_id


def build_plan_instance(
    metadata: StoredPlanMetadata, store_specs: NodeSpecs | None = None
) -> PlanInstance:
    """Rebuild a PlanInstance without regenerating any id.

    Node ids come from ``job.id`` or the stored producer index; jobs with
    neither are skipped. Dependencies may name node ids or producer ids.
    """
    nodes: dict[str, JobNode] = {}
    producer_index: dict[str, str] = {}
    for job in metadata.jobs:
        node_id = job.id or metadata.producer_id_to_node_id.get(job.producer_id, "")
        if not node_id:
            continue
        specs = (store_specs or {}).get(node_id, {})
        nodes[node_id] = JobNode(
            id=node_id,
            producer_id=job.producer_id,
            name=job.name or job.producer_id,
            task=job.task,
            work=specs.get("work"),
            prechecks=specs.get("prechecks"),
            postchecks=specs.get("postchecks"),
            dependencies=list(job.dependencies),
            base_branch=job.base_branch,
            group=job.group,
            group_id=metadata.group_path_to_id.get(job.group) if job.group else None,
            expects_no_changes=job.expects_no_changes,
            auto_heal=job.auto_heal,
        )
        producer_index[job.producer_id] = node_id

    for node in nodes.values():
        node.dependencies = [
            dep if dep in nodes else producer_index.get(dep, dep) for dep in node.dependencies
        ]
    dependents = compute_dependents(nodes.values())
    for node_id, node in nodes.items():
        node.dependents = dependents.get(node_id, [])

    node_states: dict[str, NodeExecutionState] = {}
    for node_id in nodes:
        state = metadata.node_states.get(node_id)
        if state is None:
            state = NodeExecutionState(status="pending", version=0)
        else:
            state.status = normalize_node_status(state.status)  # type: ignore[assignment]
        node_states[node_id] = state

    roots, leaves = compute_roots_and_leaves(nodes.values())
    groups = dict(metadata.groups)
    group_path_to_id = dict(metadata.group_path_to_id)
    if not groups and any(node.group for node in nodes.values()):
        groups, group_path_to_id = build_groups(nodes)

    return PlanInstance(
        id=metadata.id,
        spec=metadata.spec,
        nodes=nodes,
        producer_id_to_node_id={**metadata.producer_id_to_node_id, **producer_index},
        roots=metadata.roots or roots,
        leaves=metadata.leaves or leaves,
        node_states=node_states,
        repo_path=metadata.repo_path,
        base_branch=metadata.base_branch,
        target_branch=metadata.target_branch,
        worktree_root=metadata.worktree_root,
        created_at=metadata.created_at,
        groups=groups,
        group_states=dict(metadata.group_states),
        group_path_to_id=group_path_to_id,
        parent_plan_id=metadata.parent_plan_id,
        parent_node_id=metadata.parent_node_id,
        base_commit_at_start=metadata.base_commit_at_start,
        started_at=metadata.started_at,
        ended_at=metadata.ended_at,
        state_version=metadata.state_version,
        is_paused=metadata.is_paused,
        scaffolding=metadata.scaffolding,
        clean_up_successful_work=metadata.clean_up_successful_work,
        max_parallel=metadata.max_parallel or metadata.spec.max_parallel,
        env=metadata.env,
        resume_after_plan=metadata.resume_after_plan,
        state_history=list(metadata.state_history),
        snapshot=metadata.snapshot,
        work_summary=metadata.work_summary,
        verify_status=metadata.verify_status,
        deleted=metadata.deleted,
    )


def _job_metadata(node: JobNode, flags: Mapping[str, bool]) -> StoredJobMetadata:
    job = StoredJobMetadata(
        id=node.id,
        producer_id=node.producer_id,
        name=node.name,
        task=node.task,
        dependencies=list(node.dependencies),
        group=node.group,
        auto_heal=node.auto_heal,
        expects_no_changes=node.expects_no_changes,
        base_branch=node.base_branch,
    )
    for phase in SPEC_PHASES:
        job.set_phase(phase, flags.get(phase, False))
    return job


def _plan_metadata(plan: PlanInstance, jobs: list[StoredJobMetadata]) -> StoredPlanMetadata:
    return StoredPlanMetadata(
        id=plan.id,
        spec=plan.spec,
        repo_path=plan.repo_path,
        base_branch=plan.base_branch,
        worktree_root=plan.worktree_root,
        created_at=plan.created_at,
        jobs=jobs,
        producer_id_to_node_id=dict(plan.producer_id_to_node_id),
        roots=list(plan.roots),
        leaves=list(plan.leaves),
        node_states=dict(plan.node_states),
        groups=dict(plan.groups),
        group_states=dict(plan.group_states),
        group_path_to_id=dict(plan.group_path_to_id),
        parent_plan_id=plan.parent_plan_id,
        parent_node_id=plan.parent_node_id,
        target_branch=plan.target_branch,
        base_commit_at_start=plan.base_commit_at_start,
        started_at=plan.started_at,
        ended_at=plan.ended_at,
        state_version=plan.state_version,
        clean_up_successful_work=plan.clean_up_successful_work,
        max_parallel=plan.max_parallel,
        is_paused=plan.is_paused,
        scaffolding=plan.scaffolding,
        env=plan.env,
        resume_after_plan=plan.resume_after_plan,
        state_history=list(plan.state_history),
        snapshot=plan.snapshot,
        work_summary=plan.work_summary,
        verify_status=plan.verify_status,
        deleted=plan.deleted,
    )


async def serialize_plan_state(
    plan: PlanInstance, store: FileSystemPlanStore
) -> StoredPlanMetadata:
    """Serialize for saving; a spec missing in memory is looked up on disk before being dropped."""
    jobs: list[StoredJobMetadata] = []
    for node in plan.nodes.values():
        flags: dict[str, bool] = {}
        for phase in SPEC_PHASES:
            if node.spec_for_phase(phase) is not None:
                flags[phase] = True
            else:
                flags[phase] = await asyncio.to_thread(store.has_node_spec, plan.id, node.id, phase)
        jobs.append(_job_metadata(node, flags))
    return _plan_metadata(plan, jobs)


def serialize_plan_state_sync(
    plan: PlanInstance, existing: StoredPlanMetadata | None = None
) -> StoredPlanMetadata:
    """Serialize without touching the store, trusting flags from ``existing``."""
    known = {job.id: job for job in existing.jobs} if existing is not None else {}
    jobs: list[StoredJobMetadata] = []
    for node in plan.nodes.values():
        previous = known.get(node.id)
        flags = {
            phase: node.spec_for_phase(phase) is not None
            or (previous is not None and previous.has_phase(phase))
            for phase in SPEC_PHASES
        }
        jobs.append(_job_metadata(node, flags))
    return _plan_metadata(plan, jobs)


def load_node_specs(
    store: FileSystemPlanStore, metadata: StoredPlanMetadata
) -> dict[str, dict[str, WorkSpec | None]]:
    specs: dict[str, dict[str, WorkSpec | None]] = {}
    for job in metadata.jobs:
        if not job.id:
            continue
        specs[job.id] = {
            phase: (
                store.read_node_spec(metadata.id, job.id, phase) if job.has_phase(phase) else None
            )
            for phase in SPEC_PHASES
        }
    return specs
