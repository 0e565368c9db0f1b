"""Plan repository: the only place that turns plan files into stored plans."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

from planforge.config.schema import PlanSpec
from planforge.dag.build import compute_roots_and_leaves
from planforge.dag.validate import assert_acyclic, validate_all_deps_exist
from planforge.state.machine import PlanStateMachine
from planforge.state.model import NodeExecutionState, PlanInstance
from planforge.store.definition import FilePlanDefinition
from planforge.store.fs_store import SPEC_PHASES, FileSystemPlanStore
from planforge.store.mapper import (
    build_groups,
    build_plan_instance,
    load_node_specs,
    serialize_plan_state,
    serialize_plan_state_sync,
)
from planforge.store.metadata import StoredJobMetadata, StoredPlanMetadata
from planforge.util.errors import PlanError, PlanNotFoundError, StoreError
from planforge.util.ids import new_node_id, new_plan_id
from planforge.util.time import now_iso

logger = logging.getLogger(__name__)


class _JobRef(NamedTuple):
    id: str
    dependencies: list[str]


class PlanRepository:
    def __init__(self, store: FileSystemPlanStore) -> None:
        self.store = store
        self._known: dict[str, StoredPlanMetadata] = {}

    def create_from_file_spec(
        self,
        spec: PlanSpec,
        repo_path: Path,
        *,
        worktree_root: Path | None = None,
        plan_id: str | None = None,
        parent_plan_id: str | None = None,
        parent_node_id: str | None = None,
    ) -> PlanInstance:
        """Scaffold, write node specs, then finalize into plan metadata.

        The plan is visible as ``scaffolding`` until every spec file exists.
        """
        if not spec.jobs:
            raise PlanError("plan has no jobs")
        by_producer = [_JobRef(job.producer_id, list(job.dependencies)) for job in spec.jobs]
        if len({ref.id for ref in by_producer}) != len(by_producer):
            raise PlanError("duplicate producer_id in plan")
        validate_all_deps_exist(by_producer)
        assert_acyclic(by_producer)

        created_at = now_iso()
        plan_id = plan_id or new_plan_id(datetime.now())
        repo_path = repo_path.resolve()
        metadata = StoredPlanMetadata(
            id=plan_id,
            spec=spec,
            repo_path=str(repo_path),
            base_branch=spec.base_branch,
            target_branch=spec.target_branch or spec.base_branch,
            worktree_root=str(worktree_root or repo_path / ".worktrees"),
            created_at=created_at,
            max_parallel=spec.max_parallel,
            clean_up_successful_work=spec.clean_up_successful_work,
            is_paused=spec.start_paused,
            env=dict(spec.env) if spec.env else None,
            resume_after_plan=spec.resume_after_plan,
            parent_plan_id=parent_plan_id,
            parent_node_id=parent_node_id,
            scaffolding=True,
        )
        if self.store.exists(plan_id):
            raise StoreError(f"plan already exists: {plan_id}")
        self.store.write_plan_metadata(metadata)

        producer_index = {job.producer_id: new_node_id() for job in spec.jobs}
        for job in spec.jobs:
            node_id = producer_index[job.producer_id]
            stored = StoredJobMetadata(
                id=node_id,
                producer_id=job.producer_id,
                name=job.name or job.producer_id,
                task=job.task,
                dependencies=[producer_index.get(dep, dep) for dep in job.dependencies],
                group=job.group,
                auto_heal=job.auto_heal,
                expects_no_changes=job.expects_no_changes,
                base_branch=job.base_branch if not job.dependencies else None,
            )
            for phase in SPEC_PHASES:
                work = getattr(job, phase)
                if work is not None:
                    self.store.write_node_spec(plan_id, node_id, phase, work)
                stored.set_phase(phase, work is not None)
            metadata.jobs.append(stored)
        metadata.producer_id_to_node_id = producer_index

        metadata.roots, metadata.leaves = compute_roots_and_leaves(metadata.jobs)
        metadata.node_states = {
            job.id: NodeExecutionState(status="ready" if not job.dependencies else "pending")
            for job in metadata.jobs
        }
        metadata.scaffolding = False

        specs = load_node_specs(self.store, metadata)
        plan = build_plan_instance(metadata, specs)
        plan.groups, plan.group_path_to_id = build_groups(plan.nodes)
        PlanStateMachine(plan).refresh_groups()
        PlanStateMachine(plan).record_plan_status(reason="created")
        self.save_sync(plan)
        logger.info("created plan plan=%s name=%s jobs=%s", plan.id, spec.name, len(plan.nodes))
        return plan

    def load(self, plan_id: str) -> PlanInstance:
        if self.store.is_legacy(plan_id):
            self.store.migrate_legacy(plan_id)
        metadata = self.store.read_plan_metadata(plan_id)
        if metadata is None or metadata.deleted:
            raise PlanNotFoundError(f"plan not found: {plan_id}")
        self._known[plan_id] = metadata
        return build_plan_instance(metadata, load_node_specs(self.store, metadata))

    def definition(self, plan_id: str) -> FilePlanDefinition:
        metadata = self.store.read_plan_metadata(plan_id)
        if metadata is None or metadata.deleted:
            raise PlanNotFoundError(f"plan not found: {plan_id}")
        return FilePlanDefinition(metadata, self.store)

    async def save(self, plan: PlanInstance) -> None:
        metadata = await serialize_plan_state(plan, self.store)
        await asyncio.to_thread(self.store.write_plan_metadata, metadata)
        self._known[plan.id] = metadata

    def save_sync(self, plan: PlanInstance) -> None:
        metadata = serialize_plan_state_sync(plan, self._known.get(plan.id))
        self.store.write_plan_metadata(metadata)
        self._known[plan.id] = metadata

    def list_plans(self) -> list[StoredPlanMetadata]:
        plans: list[StoredPlanMetadata] = []
        for plan_id in self.store.list_plan_ids():
            try:
                if self.store.is_legacy(plan_id):
                    self.store.migrate_legacy(plan_id)
                metadata = self.store.read_plan_metadata(plan_id)
            except (StoreError, OSError) as exc:
                logger.warning("skipping unreadable plan plan=%s error=%s", plan_id, exc)
                continue
            if metadata is not None and not metadata.deleted:
                plans.append(metadata)
        return plans

    def delete(self, plan_id: str) -> None:
        """Tombstone the plan first so a crash mid-delete never resurrects it."""
        metadata = self.store.read_plan_metadata(plan_id)
        if metadata is not None:
            metadata.deleted = True
            self.store.write_plan_metadata(metadata)
        self.store.delete_plan(plan_id)
        self._known.pop(plan_id, None)
        logger.info("deleted plan plan=%s", plan_id)

    def migrate_all_legacy(self) -> list[str]:
        migrated: list[str] = []
        for plan_id in self.store.list_plan_ids():
            if not self.store.is_legacy(plan_id):
                continue
            try:
                self.store.migrate_legacy(plan_id)
            except (StoreError, OSError) as exc:
                logger.error("legacy migration failed plan=%s error=%s", plan_id, exc)
                continue
            migrated.append(plan_id)
        return migrated
