"""Executes one job node end to end.

``execute_job_node`` owns everything around the phase pipeline: the node's
worktree, its attempt records, auto-heal, the terminal transition and
persistence. It never raises; unexpected errors fail the node.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from planforge.agent.metrics import merge_metrics
from planforge.engine.executor import NodeExecutor, PipelineRequest, PipelineResult
from planforge.engine.heal import build_heal_spec, can_heal, with_phase_spec
from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import DependencyCommit, PhaseLog
from planforge.phases.snapshot import SnapshotManager, merge_branch
from planforge.state.machine import PlanStateMachine, is_terminal
from planforge.state.model import (
    AttemptRecord,
    JobNode,
    JobWorkSummary,
    NodeExecutionState,
    PlanInstance,
    TriggerType,
)
from planforge.state.status import append_work_summary
from planforge.store.fs_store import FileSystemPlanStore
from planforge.util.errors import StoreError
from planforge.util.time import now_iso

logger = logging.getLogger(__name__)

Persist = Callable[[PlanInstance], Awaitable[None]]


def worktree_path_for(plan: PlanInstance, node_id: str) -> Path:
    return Path(plan.worktree_root) / node_id[:8]


def merge_back_error(target_branch: str | None) -> str:
    return (
        f"Reverse integration merge to {target_branch} failed. Work completed successfully "
        "but merge could not be performed. Worktree preserved for manual retry."
    )


class ExecutionEngine:
    def __init__(
        self,
        store: FileSystemPlanStore,
        git: GitOperations,
        executor: NodeExecutor,
        *,
        persist: Persist,
        auto_heal: bool = True,
        snapshots: SnapshotManager | None = None,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        self.store = store
        self.git = git
        self.executor = executor
        self._persist = persist
        self.auto_heal = auto_heal
        self.snapshots = snapshots
        self._clock = clock

    async def execute_job_node(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        node_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        state = sm.node_state(node_id)
        if state.status != "scheduled":
            logger.info(
                "node no longer scheduled plan=%s node=%s status=%s",
                plan.id,
                node_id,
                state.status,
            )
            return
        try:
            await self._execute(plan, sm, plan.nodes[node_id], state, cancel_event)
        except Exception as exc:
            logger.exception("node execution crashed plan=%s node=%s", plan.id, node_id)
            record = state.open_attempt
            if record is not None:
                record.close("failed", self._clock(), error=str(exc))
            if not is_terminal(state.status):
                state.pid = None
                state.failure_reason = "execution-error"
                sm.transition(node_id, "failed", error=str(exc))
        await self._persist(plan)

    def _open_record(
        self,
        state: NodeExecutionState,
        number: int,
        trigger: TriggerType,
        log_path: Path | None,
        worktree: Path,
    ) -> AttemptRecord:
        record = AttemptRecord(
            attempt_number=number,
            trigger_type=trigger,
            started_at=self._clock(),
            worktree_path=str(worktree),
            base_commit=state.base_commit,
            session_id=state.session_id,
            log_path=str(log_path) if log_path is not None else None,
        )
        state.attempt_history.append(record)
        return record

    async def _execute(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        node: JobNode,
        state: NodeExecutionState,
        cancel_event: asyncio.Event | None,
    ) -> None:
        worktree = worktree_path_for(plan, node.id)
        number = state.attempts + 1
        trigger: TriggerType = "initial" if state.attempts == 0 else "retry"
        log_path = self.store.log_path(plan.id, node.id, number)
        log = PhaseLog(log_path)
        record = self._open_record(state, number, trigger, log_path, worktree)
        try:
            record.spec_dir = str(self.store.snapshot_specs_for_attempt(plan.id, node.id, number))
        except (StoreError, OSError) as exc:
            logger.warning("spec snapshot failed plan=%s node=%s error=%s", plan.id, node.id, exc)
        state.worktree_path = str(worktree)
        state.error = None
        state.failure_reason = None
        if state.resume_from_phase is None:
            state.step_statuses = {}
        sm.transition(node.id, "running")
        log.info(f"Attempt {number} ({trigger}) for job {node.name}")
        await self._persist(plan)

        is_leaf = node.id in plan.leaves
        try:
            dependency_commits = await self._prepare_worktree(plan, sm, node, state, worktree, log)
            if is_leaf and self.snapshots is not None:
                await self.snapshots.ensure(plan, log)
        except (GitError, OSError) as exc:
            error = f"Worktree setup failed: {exc}"
            log.error(error)
            record.close("failed", self._clock(), error=error, failed_phase="merge-fi")
            state.failure_reason = "execution-error"
            sm.transition(node.id, "failed", error=error)
            return
        record.base_commit = state.base_commit

        def _on_pid(pid: int) -> None:
            state.pid = pid
            sm.touch(node.id)

        def _on_exit() -> None:
            if state.pid is not None:
                state.pid = None
                sm.touch(node.id)

        request = PipelineRequest(
            plan_id=plan.id,
            node=node,
            worktree_path=worktree,
            log=log,
            repo_path=Path(plan.repo_path),
            target_branch=merge_branch(plan),
            base_commit=state.base_commit,
            base_commit_at_start=plan.base_commit_at_start,
            dependency_commits=dependency_commits,
            is_leaf=is_leaf,
            resume_from_phase=state.resume_from_phase,
            previous_statuses=dict(state.step_statuses),
            session_id=state.session_id,
            env=plan.env,
            record=record,
            cancel_event=cancel_event,
            on_pid=_on_pid,
            on_exit=_on_exit,
        )
        result = await self.executor.run(request)
        healed = False
        while (
            not result.success
            and self.auto_heal
            and not is_terminal(state.status)
            and can_heal(node, state, result)
        ):
            self._close_failed(record, result)
            self._absorb(state, result)
            record, result = await self._heal(plan, sm, node, state, request, result, number)
            healed = True

        self._absorb(state, result)
        state.pid = None
        if is_terminal(state.status):
            # Canceled, force-failed or declared dead while the pipeline ran.
            status = "canceled" if state.status == "canceled" else "failed"
            record.close(status, self._clock(), error=state.error)
            return
        if result.success:
            await self._succeed(plan, sm, node, state, record, result, log)
        elif result.canceled or (cancel_event is not None and cancel_event.is_set()):
            record.close("canceled", self._clock(), error="Execution canceled")
            state.failure_reason = "user-canceled"
            sm.transition(node.id, "canceled", error="Execution canceled")
        else:
            self._fail(plan, sm, node, state, record, result, healed=healed)

    async def _prepare_worktree(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        node: JobNode,
        state: NodeExecutionState,
        worktree: Path,
        log: PhaseLog,
    ) -> list[DependencyCommit]:
        repo = Path(plan.repo_path)
        commits = sm.get_base_commits_for_node(node.id)
        owners = {
            dep_state.completed_commit: dep_id
            for dep_id in node.dependencies
            if (dep_state := plan.node_states.get(dep_id)) and dep_state.completed_commit
        }
        if commits:
            base = commits[0]
        else:
            base = await self.git.resolve_ref(repo, node.base_branch or plan.base_branch, log.sink)
        if plan.base_commit_at_start is None:
            plan.base_commit_at_start = await self.git.resolve_ref(repo, plan.base_branch, log.sink)

        timing = await self.git.create_or_reuse_detached_worktree(repo, worktree, base, log.sink)
        if not (timing.reused and state.base_commit):
            state.base_commit = timing.base_commit
        log.info(
            f"Worktree {'reused' if timing.reused else 'created'} at {worktree} "
            f"(base {state.base_commit[:8] if state.base_commit else '?'}, {timing.total_ms}ms)"
        )
        extra: list[DependencyCommit] = []
        for commit in commits[1:]:
            dep_id = owners.get(commit, "")
            dep_node = plan.nodes.get(dep_id)
            extra.append(DependencyCommit(dep_id, dep_node.name if dep_node else dep_id, commit))
        return extra

    async def _heal(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        node: JobNode,
        state: NodeExecutionState,
        request: PipelineRequest,
        failed: PipelineResult,
        number: int,
    ) -> tuple[AttemptRecord, PipelineResult]:
        phase = failed.failed_phase
        assert phase is not None
        state.auto_heal_attempted[phase] = True
        log = request.log
        log.info("")
        log.info(f"========== AUTO-HEAL: {phase.upper()} ==========")
        logger.info("auto-heal plan=%s node=%s phase=%s", plan.id, node.id, phase)
        heal_spec = build_heal_spec(node, phase, log.path, self.store.logs_dir(plan.id))
        record = self._open_record(state, number, "auto-heal", log.path, request.worktree_path)
        sm.touch(node.id)
        await self._persist(plan)

        request.node = with_phase_spec(node, phase, heal_spec)
        request.resume_from_phase = phase
        request.previous_statuses = dict(failed.step_statuses)
        request.session_id = state.session_id
        request.record = record
        result = await self.executor.run(request)
        request.node = node
        if result.success:
            log.info("========== AUTO-HEAL: SUCCESS ==========")
        elif not result.canceled:
            log.error(f"========== AUTO-HEAL: FAILED ({result.error}) ==========")
        return record, result

    def _absorb(self, state: NodeExecutionState, result: PipelineResult) -> None:
        state.step_statuses = dict(result.step_statuses)
        if result.session_id:
            state.session_id = result.session_id
        state.metrics = merge_metrics(state.metrics, result.metrics)

    def _close_failed(self, record: AttemptRecord, result: PipelineResult) -> None:
        record.exit_code = result.exit_code
        record.completed_commit = result.completed_commit
        record.session_id = result.session_id
        record.metrics = result.metrics
        record.close("failed", self._clock(), error=result.error, failed_phase=result.failed_phase)

    async def _succeed(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        node: JobNode,
        state: NodeExecutionState,
        record: AttemptRecord,
        result: PipelineResult,
        log: PhaseLog,
    ) -> None:
        state.completed_commit = result.completed_commit or state.base_commit
        state.resume_from_phase = None
        if node.id in plan.leaves:
            state.merged_to_target = result.step_statuses.get("merge-ri") == "success"
        record.completed_commit = state.completed_commit
        record.session_id = result.session_id
        record.metrics = result.metrics
        record.close("succeeded", self._clock())
        await self._record_work_summary(plan, node, state, log)
        sm.transition(node.id, "succeeded")
        log.info(f"Job {node.name} succeeded at {(state.completed_commit or '')[:8]}")
        logger.info("node succeeded plan=%s node=%s name=%s", plan.id, node.id, node.name)
        if plan.clean_up_successful_work:
            await self._clean_up_consumed(plan, node)

    def _fail(
        self,
        plan: PlanInstance,
        sm: PlanStateMachine,
        node: JobNode,
        state: NodeExecutionState,
        record: AttemptRecord,
        result: PipelineResult,
        *,
        healed: bool,
    ) -> None:
        error = result.error or "unknown error"
        if result.failed_phase == "merge-ri":
            state.completed_commit = result.completed_commit
            state.merged_to_target = False
            record.completed_commit = result.completed_commit
            error = merge_back_error(plan.target_branch)
            logger.error("merge-back failed plan=%s node=%s", plan.id, node.id)
        elif healed:
            error = f"Auto-heal failed: {error}"
        record.exit_code = result.exit_code
        record.session_id = result.session_id
        record.metrics = result.metrics
        record.close("failed", self._clock(), error=error, failed_phase=result.failed_phase)
        state.failure_reason = result.failure_reason or "execution-error"
        sm.transition(node.id, "failed", error=error)
        logger.info(
            "node failed plan=%s node=%s phase=%s error=%s",
            plan.id,
            node.id,
            result.failed_phase,
            error,
        )

    async def _record_work_summary(
        self, plan: PlanInstance, node: JobNode, state: NodeExecutionState, log: PhaseLog
    ) -> None:
        if not state.base_commit or not state.completed_commit:
            return
        try:
            stats = await self.git.diff_stats(
                Path(plan.repo_path), state.base_commit, state.completed_commit, log.sink
            )
        except (GitError, OSError) as exc:
            logger.warning("work summary failed plan=%s node=%s error=%s", plan.id, node.id, exc)
            return
        summary = JobWorkSummary(
            node_id=node.id,
            node_name=node.name,
            commits=stats.commits,
            files_added=stats.files_added,
            files_modified=stats.files_modified,
            files_deleted=stats.files_deleted,
            description=node.task,
        )
        state.work_summary = summary
        plan.work_summary = append_work_summary(plan.work_summary, summary)

    async def _clean_up_consumed(self, plan: PlanInstance, node: JobNode) -> None:
        """Remove worktrees nobody needs any more.

        A leaf's worktree goes once it merged back; a dependency's worktree
        goes once every one of its dependents succeeded.
        """
        candidates: list[str] = []
        if node.id in plan.leaves and plan.node_states[node.id].merged_to_target:
            candidates.append(node.id)
        for dep_id in node.dependencies:
            dep = plan.nodes.get(dep_id)
            if dep is None:
                continue
            if all(plan.node_states[child].status == "succeeded" for child in dep.dependents):
                candidates.append(dep_id)
        for node_id in candidates:
            path = worktree_path_for(plan, node_id)
            if not path.exists():
                continue
            try:
                await self.git.remove_worktree(Path(plan.repo_path), path)
            except (GitError, OSError) as exc:
                logger.warning("worktree cleanup failed path=%s error=%s", path, exc)
                continue
            logger.debug("removed worktree plan=%s node=%s", plan.id, node_id)
