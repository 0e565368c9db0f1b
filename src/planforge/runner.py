"""PlanRunner: the operations surface over the store, the engine and the pump.

Operations return :class:`OpResult` with a display-ready message instead of
raising; snapshots return ``None`` for unknown plans or nodes.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from planforge.agent.delegator import AgentDelegator
from planforge.config.schema import PlanSpec
from planforge.engine.capacity import GlobalCapacity
from planforge.engine.engine import ExecutionEngine, worktree_path_for
from planforge.engine.executor import NodeExecutor
from planforge.engine.pump import DEFAULT_PUMP_INTERVAL_SEC, DEFAULT_WATCHDOG_EVERY
from planforge.engine.pump import ActivePlan, ExecutionPump
from planforge.engine.watchdog import fail_crashed
from planforge.exec.process import OsProcessTable, ProcessSpawner, ProcessTable
from planforge.exec.process import SubprocessSpawner
from planforge.git.ops import GitCli, GitError, GitOperations
from planforge.phases.base import PhaseExecutor, PhaseLog, PhaseResult
from planforge.phases.commit import CommitPhaseExecutor
from planforge.phases.merge_fi import MergeFiPhaseExecutor
from planforge.phases.merge_ri import MergeRiPhaseExecutor, RefLocks
from planforge.phases.setup import SetupPhaseExecutor
from planforge.phases.snapshot import SnapshotManager
from planforge.phases.verify_ri import VerifyRiExecutor
from planforge.phases.work import WorkPhaseExecutor
from planforge.state.machine import PlanStateMachine
from planforge.state.model import AttemptRecord, NodeExecutionState, PlanInstance, PlanStatus
from planforge.state.status import TERMINAL_PLAN_STATUSES
from planforge.store.fs_store import FileSystemPlanStore
from planforge.store.repository import PlanRepository
from planforge.util.errors import PlanNotFoundError, RunConflictError, StoreError
from planforge.util.fs import tail_lines
from planforge.util.time import now_iso
from planforge.work.spec import AgentSpec, WorkSpec, is_agent_work, normalize_work_spec

logger = logging.getLogger(__name__)

FORCE_FAIL_DEFAULT_REASON = "Force failed by user (process may have crashed)"
FAILURE_LOG_LINES = 200
RETRY_LOG_CHARS = 2000
WAIT_POLL_SEC = 0.05


@dataclass(slots=True)
class OpResult:
    success: bool
    error: str | None = None


@dataclass(slots=True)
class RetryOptions:
    new_work: WorkSpec | str | None = None
    new_prechecks: WorkSpec | str | None = None
    new_postchecks: WorkSpec | str | None = None
    clear_worktree: bool = False
    resume_session: bool | None = None


@dataclass(slots=True)
class FailureContext:
    node_id: str
    node_name: str
    phase: str
    error: str
    failure_reason: str | None = None
    session_id: str | None = None
    worktree_path: str | None = None
    last_attempt: AttemptRecord | None = None
    logs: list[str] = field(default_factory=list)


def retry_instructions(task: str, context: FailureContext) -> str:
    logs = "\n".join(context.logs)
    if len(logs) > RETRY_LOG_CHARS:
        logs = "..." + logs[-RETRY_LOG_CHARS:]
    return (
        "The previous attempt at this task failed. Please analyze the error and fix it, "
        "then continue the original work.\n\n"
        "## Previous Error\n"
        f"Phase: {context.phase}\n"
        f"Error: {context.error}\n\n"
        "## Recent Logs\n"
        f"```\n{logs}\n```\n\n"
        "## Instructions\n"
        "1. Analyze what went wrong in the previous attempt\n"
        "2. Fix the root cause of the failure\n"
        f"3. Complete the original task: {task}\n\n"
        "Resume working in the existing worktree and session context."
    )


class PlanRunner:
    def __init__(
        self,
        storage_path: Path,
        *,
        git: GitOperations | None = None,
        spawner: ProcessSpawner | None = None,
        delegator: AgentDelegator | None = None,
        max_parallel: int | None = None,
        pump_interval: float = DEFAULT_PUMP_INTERVAL_SEC,
        watchdog_every: int = DEFAULT_WATCHDOG_EVERY,
        process_table: ProcessTable | None = None,
        capacity: GlobalCapacity | None = None,
        use_capacity: bool = True,
        drive: bool = True,
        clock: Callable[[], str] = now_iso,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.storage_path = storage_path
        self.store = FileSystemPlanStore(storage_path)
        self.repository = PlanRepository(self.store)
        self.git = git or GitCli()
        self.spawner = spawner or SubprocessSpawner()
        self.delegator = delegator
        self.process_table = process_table or OsProcessTable()
        self.drive = drive
        self._clock = clock
        self._plans: dict[str, ActivePlan] = {}
        self._save_lock = asyncio.Lock()

        ref_locks = RefLocks()
        work = WorkPhaseExecutor(self.spawner, delegator)
        executors: dict[str, PhaseExecutor] = {
            "merge-fi": MergeFiPhaseExecutor(self.git),
            "setup": SetupPhaseExecutor(self.git),
            "prechecks": work,
            "work": work,
            "commit": CommitPhaseExecutor(self.git, delegator),
            "postchecks": work,
            "merge-ri": MergeRiPhaseExecutor(self.git, ref_locks),
        }
        self.snapshots = SnapshotManager(self.git, ref_locks)
        self.engine = ExecutionEngine(
            self.store,
            self.git,
            NodeExecutor(self.git, executors, clock=clock),
            persist=self._save,
            auto_heal=delegator is not None,
            snapshots=self.snapshots,
            clock=clock,
        )
        self.verifier = VerifyRiExecutor(self.git, work, ref_locks)
        if capacity is None and use_capacity:
            capacity = GlobalCapacity(
                storage_path, global_max_parallel=max_parallel, process_table=self.process_table
            )
        self.capacity = capacity
        self.pump = ExecutionPump(
            self._plans,
            self.engine,
            self.store,
            persist=self._save,
            capacity=capacity,
            process_table=self.process_table,
            interval=pump_interval,
            watchdog_every=watchdog_every,
            sleep=sleep,
            clock=clock,
            on_cancel=self._cancel_active,
            on_complete=self._complete,
        )

    # lifecycle

    async def initialize(
        self, plan_ids: list[str] | None = None, *, recover: bool = True
    ) -> None:
        """Load plans (all, or just ``plan_ids``) and recover interrupted nodes."""
        migrated = self.repository.migrate_all_legacy()
        if migrated:
            logger.info("migrated legacy plans count=%s", len(migrated))
        wanted = plan_ids if plan_ids is not None else self.store.list_plan_ids()
        for plan_id in wanted:
            try:
                plan = self.repository.load(plan_id)
            except (StoreError, PlanNotFoundError, OSError) as exc:
                logger.warning("could not load plan plan=%s error=%s", plan_id, exc)
                continue
            active = self._attach(plan)
            if recover and self._recover(active):
                await self._save(plan)
        if self.capacity is not None:
            try:
                await asyncio.to_thread(self.capacity.register)
            except (RunConflictError, OSError) as exc:
                logger.warning("capacity registration failed: %s", exc)

    def _attach(self, plan: PlanInstance) -> ActivePlan:
        active = ActivePlan(plan=plan, sm=PlanStateMachine(plan, clock=self._clock))
        active.finalized = active.all_terminal and plan.started_at is not None
        self._plans[plan.id] = active
        return active

    def _recover(self, active: ActivePlan) -> bool:
        changed = False
        for node_id, state in list(active.plan.node_states.items()):
            if state.status == "running":
                if state.pid is not None and self.process_table.is_alive(state.pid):
                    continue
                logger.warning(
                    "recovering crashed node plan=%s node=%s pid=%s",
                    active.plan.id,
                    node_id,
                    state.pid,
                )
                fail_crashed(active.sm, node_id, state, clock=self._clock)
                changed = True
            elif state.status == "scheduled":
                active.sm.reset_node_to_pending(node_id)
                changed = True
        return changed

    async def shutdown(self) -> None:
        await self.pump.stop()
        for active in self._plans.values():
            if not active.plan.deleted:
                self.repository.save_sync(active.plan)
        if self.capacity is not None:
            self.capacity.unregister()

    async def _save(self, plan: PlanInstance) -> None:
        if plan.deleted:
            return
        async with self._save_lock:
            try:
                await self.repository.save(plan)
            except (StoreError, OSError) as exc:
                logger.error("failed to save plan plan=%s error=%s", plan.id, exc)

    def _active(self, plan_id: str) -> ActivePlan | None:
        active = self._plans.get(plan_id)
        if active is None or active.plan.deleted:
            return None
        return active

    def _ensure_pump(self) -> None:
        if self.drive and not self.pump.is_running:
            self.pump.start()

    # operations

    async def create_plan(
        self, spec: PlanSpec, repo_path: Path, *, worktree_root: Path | None = None
    ) -> PlanInstance:
        plan = await asyncio.to_thread(
            self.repository.create_from_file_spec, spec, repo_path, worktree_root=worktree_root
        )
        self._attach(plan)
        return plan

    async def enqueue(
        self, spec: PlanSpec, repo_path: Path, *, worktree_root: Path | None = None
    ) -> PlanInstance:
        plan = await self.create_plan(spec, repo_path, worktree_root=worktree_root)
        if not plan.is_paused:
            await self.start(plan.id)
        return plan

    async def start(self, plan_id: str) -> OpResult:
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        plan = active.plan
        if plan.started_at is None:
            plan.started_at = self._clock()
        plan.is_paused = False
        active.sm.record_plan_status(reason="started")
        await self._save(plan)
        self._ensure_pump()
        logger.info("plan started plan=%s name=%s", plan.id, plan.name)
        return OpResult(True)

    async def pause(self, plan_id: str) -> OpResult:
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        if active.all_terminal:
            return OpResult(False, "Plan already finished")
        active.plan.is_paused = True
        active.sm.record_plan_status(reason="paused")
        await self._save(active.plan)
        logger.info("plan paused plan=%s", plan_id)
        return OpResult(True)

    async def resume(self, plan_id: str) -> OpResult:
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        if not active.plan.is_paused and active.plan.started_at is not None:
            return OpResult(False, "Plan is not paused")
        return await self.start(plan_id)

    async def cancel(self, plan_id: str) -> OpResult:
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        await self._cancel_active(active)
        return OpResult(True)

    async def _cancel_active(self, active: ActivePlan) -> None:
        plan = active.plan
        active.abort()
        canceled = active.sm.cancel_all()
        logger.info("plan canceled plan=%s nodes=%s", plan.id, len(canceled))
        await self._save(plan)
        tasks = list(active.tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if plan.clean_up_successful_work:
            await self._remove_worktrees(plan)
        await self._save(plan)

    async def _remove_worktrees(self, plan: PlanInstance) -> None:
        repo = Path(plan.repo_path)
        for node_id in plan.nodes:
            path = worktree_path_for(plan, node_id)
            if not path.exists():
                continue
            try:
                await self.git.remove_worktree(repo, path)
            except (GitError, OSError) as exc:
                logger.warning("worktree removal failed path=%s error=%s", path, exc)

    async def delete(self, plan_id: str) -> OpResult:
        active = self._active(plan_id)
        if active is None and not self.store.exists(plan_id):
            return OpResult(False, f"Plan not found: {plan_id}")
        if active is not None:
            if active.tasks:
                active.abort()
                active.sm.cancel_all()
                await asyncio.gather(*active.tasks.values(), return_exceptions=True)
            await self._remove_worktrees(active.plan)
            await self.snapshots.discard(active.plan)
            active.plan.deleted = True
            self._plans.pop(plan_id, None)
        try:
            await asyncio.to_thread(self.repository.delete, plan_id)
        except (StoreError, OSError) as exc:
            return OpResult(False, f"Failed to delete plan: {exc}")
        return OpResult(True)

    async def retry_plan(self, plan_id: str) -> OpResult:
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        failed = active.sm.get_nodes_by_status("failed")
        if not failed:
            return OpResult(False, "No failed nodes to retry")
        errors: list[str] = []
        for node_id in failed:
            result = await self.retry_node(plan_id, node_id)
            if not result.success and result.error:
                errors.append(f"{active.plan.nodes[node_id].name}: {result.error}")
        if errors:
            return OpResult(False, "; ".join(errors))
        return OpResult(True)

    async def retry_node(
        self, plan_id: str, node_id: str, options: RetryOptions | None = None
    ) -> OpResult:
        options = options or RetryOptions()
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        plan = active.plan
        node = plan.nodes.get(node_id)
        state = plan.node_states.get(node_id)
        if node is None or state is None:
            return OpResult(False, f"Node not found: {node_id}")
        if state.status != "failed":
            return OpResult(False, f"Node is not in failed state: {state.status}")

        if options.clear_worktree:
            upstream = [
                plan.nodes[dep_id].name
                for dep_id in node.dependencies
                if plan.node_states[dep_id].completed_commit
            ]
            if upstream:
                return OpResult(
                    False,
                    "Cannot clear worktree: would lose merged commits from upstream "
                    f"dependencies ({', '.join(upstream)}). Retry without clear_worktree "
                    "to preserve upstream work, or manually merge upstream commits after reset.",
                )

        new_work = normalize_work_spec(options.new_work)
        new_prechecks = normalize_work_spec(options.new_prechecks)
        new_postchecks = normalize_work_spec(options.new_postchecks)
        if new_work is not None:
            node.work = new_work
            self.store.write_node_spec(plan.id, node.id, "work", new_work)
            if not is_agent_work(new_work):
                state.session_id = None
        elif (
            is_agent_work(node.work)
            and state.session_id
            and options.resume_session is not False
        ):
            context = self.get_failure_context(plan_id, node_id)
            if context is not None:
                assert isinstance(node.work, AgentSpec)
                node.work = dataclasses.replace(
                    node.work, instructions=retry_instructions(node.task or node.name, context)
                )
                self.store.write_node_spec(plan.id, node.id, "work", node.work)
                logger.info("generated retry instructions plan=%s node=%s", plan.id, node.id)
        if options.resume_session is False:
            state.session_id = None
        if new_prechecks is not None:
            node.prechecks = new_prechecks
            self.store.write_node_spec(plan.id, node.id, "prechecks", new_prechecks)
        if new_postchecks is not None:
            node.postchecks = new_postchecks
            self.store.write_node_spec(plan.id, node.id, "postchecks", new_postchecks)

        last = state.last_attempt
        failed_phase = last.failed_phase if last is not None else None
        if new_work is not None or new_prechecks is not None or options.clear_worktree:
            state.resume_from_phase = None
            state.step_statuses = {}
        elif new_postchecks is not None and failed_phase == "postchecks":
            state.resume_from_phase = "postchecks"
        else:
            state.resume_from_phase = failed_phase

        if options.clear_worktree:
            await self._reset_worktree(plan, state)

        state.auto_heal_attempted = {}
        active.sm.reset_node_to_pending(node_id)
        active.finalized = False
        await self._save(plan)
        logger.info(
            "node retry plan=%s node=%s resume_from=%s",
            plan.id,
            node.name,
            state.resume_from_phase,
        )
        if plan.started_at is not None and not plan.is_paused:
            self._ensure_pump()
        return OpResult(True)

    async def _reset_worktree(self, plan: PlanInstance, state: NodeExecutionState) -> None:
        if not state.worktree_path or not state.base_commit:
            return
        worktree = Path(state.worktree_path)
        if not worktree.exists():
            return
        try:
            await self.git.fetch(Path(plan.repo_path))
        except GitError as exc:
            logger.warning("fetch before worktree reset failed: %s", exc)
        try:
            await self.git.reset_hard(worktree, state.base_commit)
            await self.git.clean(worktree)
        except (GitError, OSError) as exc:
            logger.warning("worktree reset failed path=%s error=%s", worktree, exc)

    async def force_fail_node(
        self, plan_id: str, node_id: str, reason: str | None = None
    ) -> OpResult:
        active = self._active(plan_id)
        if active is None:
            return OpResult(False, f"Plan not found: {plan_id}")
        state = active.plan.node_states.get(node_id)
        if state is None:
            return OpResult(False, f"Node not found: {node_id}")
        if state.status not in ("running", "scheduled"):
            return OpResult(False, f"Node is not running: {state.status}")
        error = reason or FORCE_FAIL_DEFAULT_REASON
        active.abort(node_id)
        record = state.open_attempt
        if record is not None:
            record.close("failed", self._clock(), error=error)
        state.pid = None
        state.failure_reason = "user-canceled"
        active.sm.transition(node_id, "failed", error=error)
        await self._save(active.plan)
        logger.info("node force-failed plan=%s node=%s", plan_id, node_id)
        return OpResult(True)

    # snapshots

    def get_plan(self, plan_id: str) -> PlanInstance | None:
        active = self._active(plan_id)
        return active.plan if active is not None else None

    def list_plans(self) -> list[PlanInstance]:
        plans = [active.plan for active in self._plans.values() if not active.plan.deleted]
        return sorted(plans, key=lambda plan: plan.created_at)

    def get_status(self, plan_id: str) -> PlanStatus | None:
        active = self._active(plan_id)
        return active.sm.compute_plan_status() if active is not None else None

    def get_node_state(self, plan_id: str, node_id: str) -> NodeExecutionState | None:
        plan = self.get_plan(plan_id)
        if plan is None:
            return None
        return plan.node_states.get(node_id)

    def state_version(self, plan_id: str) -> int:
        plan = self.get_plan(plan_id)
        return plan.state_version if plan is not None else -1

    def get_failure_context(self, plan_id: str, node_id: str) -> FailureContext | None:
        plan = self.get_plan(plan_id)
        if plan is None or node_id not in plan.nodes:
            return None
        state = plan.node_states[node_id]
        last = state.last_attempt
        logs: list[str] = []
        if last is not None and last.log_path:
            logs = tail_lines(Path(last.log_path), FAILURE_LOG_LINES)
        return FailureContext(
            node_id=node_id,
            node_name=plan.nodes[node_id].name,
            phase=(last.failed_phase if last is not None else None) or "unknown",
            error=state.error or "Unknown error",
            failure_reason=state.failure_reason,
            session_id=state.session_id,
            worktree_path=state.worktree_path,
            last_attempt=last,
            logs=logs,
        )

    # driving

    async def run_until_complete(self, plan_id: str) -> PlanStatus | None:
        """Drive the pump until the plan is terminal, or paused with nothing running."""
        active = self._active(plan_id)
        if active is None:
            return None
        if active.plan.started_at is None and not active.plan.is_paused:
            await self.start(plan_id)
        self.pump.start()
        while True:
            status = active.sm.compute_plan_status()
            if status in TERMINAL_PLAN_STATUSES and active.finalized and active.idle:
                break
            if active.plan.is_paused and active.idle:
                break
            if active.plan.deleted:
                return None
            await asyncio.sleep(WAIT_POLL_SEC)
        return active.sm.compute_plan_status()

    async def _complete(self, active: ActivePlan) -> None:
        plan = active.plan
        status = active.sm.compute_plan_status()
        merged = any(plan.node_states[leaf].merged_to_target for leaf in plan.leaves)
        if merged and status in ("succeeded", "partial"):
            if plan.snapshot is not None:
                await self._land_snapshot(plan)
            elif plan.spec.verify_ri is not None:
                await self._verify(plan)
        logger.info("plan finished plan=%s status=%s", plan.id, status)
        await self._save(plan)

    async def _verify(
        self, plan: PlanInstance, *, branch: str | None = None, worktree: Path | None = None
    ) -> PhaseResult:
        log = PhaseLog(self.store.logs_dir(plan.id) / "verify-ri.log")
        plan.verify_status = "running"
        await self._save(plan)
        result = await self.verifier.run(plan, log, branch=branch, worktree=worktree)
        plan.verify_status = "success" if result.success else "failed"
        if not result.success:
            logger.error("verify-ri failed plan=%s error=%s", plan.id, result.error)
        return result

    async def _land_snapshot(self, plan: PlanInstance) -> None:
        async def verify(branch: str, worktree: Path) -> PhaseResult:
            if plan.spec.verify_ri is None:
                return PhaseResult(success=True)
            return await self._verify(plan, branch=branch, worktree=worktree)

        log = PhaseLog(self.store.logs_dir(plan.id) / "final-merge.log")
        await self.snapshots.final_merge(plan, log, verify=verify)
