"""The coordinator loop: one tick schedules work for every loaded plan."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from planforge.engine.capacity import GlobalCapacity
from planforge.engine.engine import ExecutionEngine, Persist
from planforge.engine.scheduler import plan_budget, select_nodes
from planforge.engine.watchdog import check_liveness
from planforge.exec.cancel import take_request
from planforge.exec.process import OsProcessTable, ProcessTable
from planforge.state.machine import PlanStateMachine, is_terminal
from planforge.state.model import PlanInstance
from planforge.store.fs_store import FileSystemPlanStore
from planforge.util.time import now_iso

logger = logging.getLogger(__name__)

DEFAULT_PUMP_INTERVAL_SEC = 1.0
DEFAULT_WATCHDOG_EVERY = 5


@dataclass(slots=True)
class ActivePlan:
    plan: PlanInstance
    sm: PlanStateMachine
    tasks: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    cancel_events: dict[str, asyncio.Event] = field(default_factory=dict)
    finalizer: asyncio.Task[None] | None = None
    finalized: bool = False

    def abort(self, node_id: str | None = None) -> None:
        """Signal running executions to stop; they end as canceled."""
        for key, event in self.cancel_events.items():
            if node_id is None or key == node_id:
                event.set()

    @property
    def all_terminal(self) -> bool:
        return all(is_terminal(state.status) for state in self.plan.node_states.values())

    @property
    def idle(self) -> bool:
        finalizing = self.finalizer is not None and not self.finalizer.done()
        return not self.tasks and not finalizing


PlanHook = Callable[[ActivePlan], Awaitable[None]]


class ExecutionPump:
    def __init__(
        self,
        plans: dict[str, ActivePlan],
        engine: ExecutionEngine,
        store: FileSystemPlanStore,
        *,
        persist: Persist,
        capacity: GlobalCapacity | None = None,
        process_table: ProcessTable | None = None,
        interval: float = DEFAULT_PUMP_INTERVAL_SEC,
        watchdog_every: int = DEFAULT_WATCHDOG_EVERY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], str] = now_iso,
        on_cancel: PlanHook | None = None,
        on_complete: PlanHook | None = None,
    ) -> None:
        self.plans = plans
        self.engine = engine
        self.store = store
        self._persist = persist
        self.capacity = capacity
        self.process_table = process_table or OsProcessTable()
        self.interval = interval
        self.watchdog_every = max(1, watchdog_every)
        self._sleep = sleep
        self._clock = clock
        self._on_cancel = on_cancel
        self._on_complete = on_complete
        self._ticks = 0
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def running_jobs(self) -> int:
        return sum(len(active.tasks) for active in self.plans.values())

    def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._loop_task = asyncio.create_task(self._run())
        logger.debug("pump started interval=%s", self.interval)

    async def stop(self) -> None:
        self._stopping = True
        task = self._loop_task
        self._loop_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("pump stopped ticks=%s", self._ticks)

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.tick()
            except Exception:
                logger.exception("pump tick failed")
            await self._sleep(self.interval)

    async def tick(self) -> None:
        self._ticks += 1
        for active in list(self.plans.values()):
            await self._honour_requests(active)

        if self._ticks % self.watchdog_every == 0:
            for active in self.plans.values():
                supervised = {nid for nid, task in active.tasks.items() if not task.done()}
                if check_liveness(
                    active.sm, self.process_table, supervised=supervised, clock=self._clock
                ):
                    await self._persist(active.plan)

        global_slots = await self._global_slots()
        for active in list(self.plans.values()):
            plan = active.plan
            if plan.deleted or plan.started_at is None:
                continue
            version = plan.state_version
            if not plan.is_paused:
                active.sm.promote_ready()
                budget = plan_budget(plan, global_slots)
                for node_id in select_nodes(plan, active.sm, budget):
                    self._spawn(active, node_id)
                    global_slots -= 1
            if active.all_terminal and active.idle and not active.finalized:
                self._finalize(active)
            if plan.state_version != version:
                await self._persist(plan)

    async def _global_slots(self) -> int:
        running = self.running_jobs
        if self.capacity is None:
            return 1 << 30
        active_plans = [plan_id for plan_id, active in self.plans.items() if active.tasks]
        # The registry is a locked file; keep its I/O off the event loop.
        await asyncio.to_thread(self.capacity.heartbeat, running, active_plans)
        available = await asyncio.to_thread(self.capacity.available)
        return max(0, available - running)

    async def _honour_requests(self, active: ActivePlan) -> None:
        plan = active.plan
        plan_dir = self.store.plan_dir(plan.id)
        if take_request(plan_dir, "cancel"):
            logger.info("cancel requested plan=%s", plan.id)
            if self._on_cancel is not None:
                await self._on_cancel(active)
            else:
                active.abort()
                active.sm.cancel_all()
                await self._persist(plan)
        if take_request(plan_dir, "pause") and not plan.is_paused:
            logger.info("pause requested plan=%s", plan.id)
            plan.is_paused = True
            active.sm.record_plan_status(reason="paused")
            await self._persist(plan)
        if take_request(plan_dir, "resume") and plan.is_paused:
            logger.info("resume requested plan=%s", plan.id)
            plan.is_paused = False
            active.sm.record_plan_status(reason="resumed")
            await self._persist(plan)

    def _spawn(self, active: ActivePlan, node_id: str) -> None:
        plan = active.plan
        active.sm.transition(node_id, "scheduled")
        event = asyncio.Event()
        active.cancel_events[node_id] = event
        task = asyncio.create_task(
            self.engine.execute_job_node(plan, active.sm, node_id, event),
            name=f"node-{node_id[:8]}",
        )
        active.tasks[node_id] = task
        task.add_done_callback(lambda done: self._reap(active, node_id, done))
        logger.info("scheduled node plan=%s node=%s", plan.id, plan.nodes[node_id].name)

    def _reap(self, active: ActivePlan, node_id: str, task: asyncio.Task[None]) -> None:
        if active.tasks.get(node_id) is task:
            del active.tasks[node_id]
            active.cancel_events.pop(node_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("node task failed plan=%s node=%s error=%s", active.plan.id, node_id, exc)

    def _finalize(self, active: ActivePlan) -> None:
        active.finalized = True
        if self._on_complete is None:
            return
        active.finalizer = asyncio.create_task(self._on_complete(active))
