from __future__ import annotations

import asyncio
import json
import os
import threading
from pathlib import Path
from typing import Any

import pytest

from fakes import FakeGit, FakeProcessTable, FakeSpawner, exit_with, node_id
from planforge.config.loader import parse_plan
from planforge.engine.capacity import REGISTRY_FILE, GlobalCapacity
from planforge.exec.cancel import write_request
from planforge.phases.base import PhaseLog
from planforge.runner import (
    FORCE_FAIL_DEFAULT_REASON,
    RETRY_LOG_CHARS,
    FailureContext,
    PlanRunner,
    RetryOptions,
    retry_instructions,
)
from planforge.state.model import AttemptRecord, PlanInstance
from planforge.work.spec import AgentSpec, ShellSpec

BASE = "a" * 40


def _runner(tmp_path: Path, git: FakeGit, spawner: FakeSpawner, **kwargs: Any) -> PlanRunner:
    kwargs.setdefault("use_capacity", False)
    kwargs.setdefault("process_table", FakeProcessTable(alive={4242, 5151}))
    return PlanRunner(
        tmp_path / "store",
        git=git,
        spawner=spawner,
        pump_interval=0.01,
        watchdog_every=10_000,
        **kwargs,
    )


def _dirtying(git: FakeGit) -> dict[str, Any]:
    return {"make": lambda cwd: git.make_dirty(cwd, "out.txt")}


async def _create(runner: PlanRunner, tmp_path: Path, raw: dict[str, Any]) -> PlanInstance:
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    return await runner.create_plan(parse_plan(raw), repo)


async def _complete(runner: PlanRunner, plan_id: str) -> str | None:
    return await asyncio.wait_for(runner.run_until_complete(plan_id), timeout=10)


def _fail(plan: PlanInstance, producer_id: str, *, phase: str = "work", **fields: Any) -> None:
    state = plan.node_states[node_id(plan, producer_id)]
    state.status = "failed"
    state.error = fields.pop("error", f"{phase.capitalize()} failed")
    for key, value in fields.items():
        setattr(state, key, value)
    state.attempt_history.append(
        AttemptRecord(1, "initial", status="failed", failed_phase=phase)
    )


CHAIN = {
    "name": "chain",
    "jobs": [
        {"producer_id": "lib", "work": "make"},
        {"producer_id": "app", "work": "make", "dependencies": ["lib"]},
    ],
}


@pytest.mark.asyncio
async def test_run_until_complete_merges_leaf(tmp_path: Path) -> None:
    git = FakeGit()
    runner = _runner(tmp_path, git, FakeSpawner(effects=_dirtying(git)))
    plan = await _create(runner, tmp_path, CHAIN)
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    assert plan.started_at is not None
    assert git.refs["main"] != BASE
    app = plan.node_states[node_id(plan, "app")]
    assert app.merged_to_target is True
    assert runner.get_status(plan.id) == "succeeded"

    reloaded = runner.repository.load(plan.id)
    assert {state.status for state in reloaded.node_states.values()} == {"succeeded"}


@pytest.mark.asyncio
async def test_failed_node_retries_to_success(tmp_path: Path) -> None:
    git = FakeGit()
    spawner = FakeSpawner(
        scripts={"make": [exit_with(1), exit_with(0)]}, effects=_dirtying(git)
    )
    runner = _runner(tmp_path, git, spawner)
    plan = await _create(runner, tmp_path, {"jobs": [{"producer_id": "app", "work": "make"}]})
    nid = node_id(plan, "app")
    try:
        assert await _complete(runner, plan.id) == "failed"
        state = plan.node_states[nid]
        assert state.attempt_history[-1].failed_phase == "work"

        result = await runner.retry_node(plan.id, nid)
        assert result.success
        assert state.resume_from_phase == "work"
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    assert state.attempts == 2
    assert [record.trigger_type for record in state.attempt_history] == ["initial", "retry"]


@pytest.mark.asyncio
async def test_max_parallel_limits_scheduling(tmp_path: Path) -> None:
    git = FakeGit()
    spawner = FakeSpawner(effects=_dirtying(git), block=asyncio.Event())
    runner = _runner(tmp_path, git, spawner, drive=False)
    plan = await _create(
        runner,
        tmp_path,
        {
            "max_parallel": 1,
            "jobs": [
                {"producer_id": "a", "work": "make"},
                {"producer_id": "b", "work": "make"},
            ],
        },
    )
    try:
        await runner.start(plan.id)
        await runner.pump.tick()
        assert runner.pump.running_jobs == 1
        assert plan.node_states[node_id(plan, "b")].status == "ready"

        assert spawner.block is not None
        spawner.block.set()
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()


@pytest.mark.asyncio
async def test_verify_ri_runs_after_merge(tmp_path: Path) -> None:
    git = FakeGit()
    spawner = FakeSpawner(effects=_dirtying(git))
    runner = _runner(tmp_path, git, spawner)
    plan = await _create(
        runner,
        tmp_path,
        {"verify_ri": "check", "jobs": [{"producer_id": "app", "work": "make"}]},
    )
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    assert plan.verify_status == "success"
    assert spawner.commands()[-1] == "check"
    assert (runner.store.logs_dir(plan.id) / "verify-ri.log").is_file()


@pytest.mark.asyncio
async def test_verify_ri_failure_is_recorded(tmp_path: Path) -> None:
    git = FakeGit()
    spawner = FakeSpawner(scripts={"check": [exit_with(1)]}, effects=_dirtying(git))
    runner = _runner(tmp_path, git, spawner)
    plan = await _create(
        runner,
        tmp_path,
        {"verify_ri": "check", "jobs": [{"producer_id": "app", "work": "make"}]},
    )
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()
    assert plan.verify_status == "failed"


@pytest.mark.asyncio
async def test_verify_ri_error_does_not_leave_status_running(tmp_path: Path) -> None:
    git = FakeGit()

    def explode(cwd: Path) -> None:
        raise RuntimeError("verifier crashed")

    spawner = FakeSpawner(effects={**_dirtying(git), "check": explode})
    runner = _runner(tmp_path, git, spawner)
    plan = await _create(
        runner,
        tmp_path,
        {"verify_ri": "check", "jobs": [{"producer_id": "app", "work": "make"}]},
    )
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    assert plan.verify_status == "failed"
    assert runner.repository.load(plan.id).verify_status == "failed"
    assert not any(path.name.startswith("verify-ri-") for path in git.heads)


SNAPSHOT_PLAN = {
    "snapshot": True,
    "verify_ri": "check",
    "jobs": [
        {"producer_id": "lib", "work": "make"},
        {"producer_id": "app", "work": "make"},
    ],
}


@pytest.mark.asyncio
async def test_snapshot_lands_on_target_once_after_verify(tmp_path: Path) -> None:
    git = FakeGit()
    spawner = FakeSpawner(effects=_dirtying(git))
    runner = _runner(tmp_path, git, spawner)
    plan = await _create(runner, tmp_path, SNAPSHOT_PLAN)
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    snapshot = plan.snapshot
    assert snapshot is not None
    assert snapshot.branch == f"planforge/snapshot/{plan.id}"
    assert snapshot.base_commit == BASE
    assert snapshot.merge_status == "success"
    assert git.refs["refs/heads/main"] == snapshot.merged_commit
    leaf_commits = {state.completed_commit for state in plan.node_states.values()}
    assert leaf_commits <= git.ancestors(snapshot.merged_commit)
    assert f"refs/heads/{snapshot.branch}" not in git.refs
    assert plan.verify_status == "success"
    verify_call = spawner.calls[-1]
    assert spawner.key(verify_call.argv) == "check"
    assert verify_call.cwd == Path(snapshot.worktree_path)
    assert Path(snapshot.worktree_path) in git.removed


@pytest.mark.asyncio
async def test_snapshot_kept_when_verify_fails(tmp_path: Path) -> None:
    git = FakeGit()
    spawner = FakeSpawner(scripts={"check": [exit_with(1)]}, effects=_dirtying(git))
    runner = _runner(tmp_path, git, spawner)
    plan = await _create(runner, tmp_path, SNAPSHOT_PLAN)
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    snapshot = plan.snapshot
    assert snapshot is not None
    assert snapshot.merge_status == "failed"
    assert snapshot.error is not None
    assert snapshot.error.startswith("Pre-merge verify-ri failed")
    assert plan.verify_status == "failed"
    assert git.refs["refs/heads/main"] == BASE
    assert git.refs[f"refs/heads/{snapshot.branch}"] != BASE
    assert all(state.merged_to_target for state in plan.node_states.values())


@pytest.mark.asyncio
async def test_snapshot_merges_when_target_moved(tmp_path: Path) -> None:
    git = FakeGit()
    moved = git._new_commit(BASE)

    def make(cwd: Path) -> None:
        git.make_dirty(cwd, "out.txt")
        git.refs["refs/heads/main"] = git.refs["main"] = moved

    runner = _runner(tmp_path, git, FakeSpawner(effects={"make": make}))
    plan = await _create(
        runner, tmp_path, {"snapshot": True, "jobs": [{"producer_id": "app", "work": "make"}]}
    )
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    snapshot = plan.snapshot
    assert snapshot is not None
    assert snapshot.merge_status == "success"
    assert plan.verify_status is None
    head = git.refs["refs/heads/main"]
    assert head == snapshot.merged_commit
    assert git.parents[head][0] == moved
    assert git.parents[head][1] != BASE


@pytest.mark.asyncio
async def test_delete_drops_pending_snapshot_branch(tmp_path: Path) -> None:
    git = FakeGit()
    runner = _runner(tmp_path, git, FakeSpawner(effects=_dirtying(git)), drive=False)
    plan = await _create(
        runner, tmp_path, {"snapshot": True, "jobs": [{"producer_id": "app", "work": "make"}]}
    )
    await runner.snapshots.ensure(plan, PhaseLog(None))
    branch = f"refs/heads/planforge/snapshot/{plan.id}"
    assert git.refs[branch] == BASE

    assert (await runner.delete(plan.id)).success
    assert branch not in git.refs
    assert git.refs["refs/heads/main"] == BASE


@pytest.mark.asyncio
async def test_enqueue_honours_start_paused(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    repo = tmp_path / "repo"
    repo.mkdir()
    paused = await runner.enqueue(
        parse_plan({"start_paused": True, "jobs": [{"producer_id": "a", "work": "true"}]}), repo
    )
    running = await runner.enqueue(
        parse_plan({"jobs": [{"producer_id": "a", "work": "true"}]}), repo
    )

    assert paused.is_paused
    assert paused.started_at is None
    assert not running.is_paused
    assert running.started_at is not None
    assert [plan.id for plan in runner.list_plans()] == [paused.id, running.id]


@pytest.mark.asyncio
async def test_pause_resume_and_cancel(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, CHAIN)

    assert (await runner.pause(plan.id)).success
    assert plan.is_paused
    assert (await runner.resume(plan.id)).success
    assert not plan.is_paused
    assert plan.started_at is not None

    again = await runner.resume(plan.id)
    assert (again.success, again.error) == (False, "Plan is not paused")

    assert (await runner.cancel(plan.id)).success
    assert runner.get_status(plan.id) == "canceled"
    finished = await runner.pause(plan.id)
    assert finished.error == "Plan already finished"


@pytest.mark.asyncio
async def test_unknown_plan_operations(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    for op in (runner.start, runner.pause, runner.resume, runner.cancel, runner.delete):
        result = await op("missing")
        assert result.error == "Plan not found: missing"
    assert (await runner.retry_node("missing", "x")).error == "Plan not found: missing"
    assert runner.get_plan("missing") is None
    assert runner.get_status("missing") is None
    assert runner.state_version("missing") == -1
    assert await runner.run_until_complete("missing") is None


@pytest.mark.asyncio
async def test_pump_honours_request_files(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, CHAIN)
    await runner.start(plan.id)
    plan_dir = runner.store.plan_dir(plan.id)

    write_request(plan_dir, "pause")
    await runner.pump.tick()
    assert plan.is_paused
    assert runner.pump.running_jobs == 0

    write_request(plan_dir, "resume")
    write_request(plan_dir, "cancel")
    await runner.pump.tick()
    assert not plan.is_paused
    assert runner.get_status(plan.id) == "canceled"
    assert not any(plan_dir.glob("*.request"))


@pytest.mark.asyncio
async def test_retry_requires_failed_node(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, CHAIN)

    result = await runner.retry_node(plan.id, node_id(plan, "lib"))
    assert result.error == "Node is not in failed state: ready"
    assert (await runner.retry_node(plan.id, "nope")).error == "Node not found: nope"
    assert (await runner.retry_plan(plan.id)).error == "No failed nodes to retry"


@pytest.mark.asyncio
async def test_retry_plan_resets_every_failed_node(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(
        runner,
        tmp_path,
        {"jobs": [{"producer_id": "a", "work": "true"}, {"producer_id": "b", "work": "true"}]},
    )
    _fail(plan, "a")
    _fail(plan, "b", phase="postchecks")

    assert (await runner.retry_plan(plan.id)).success
    assert plan.node_states[node_id(plan, "a")].status == "ready"
    assert plan.node_states[node_id(plan, "b")].resume_from_phase == "postchecks"


@pytest.mark.asyncio
async def test_clear_worktree_refused_with_upstream_commits(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, CHAIN)
    lib = plan.node_states[node_id(plan, "lib")]
    lib.status = "succeeded"
    lib.completed_commit = "c" * 40
    _fail(plan, "app")

    result = await runner.retry_node(
        plan.id, node_id(plan, "app"), RetryOptions(clear_worktree=True)
    )
    assert not result.success
    assert result.error is not None
    assert result.error.startswith(
        "Cannot clear worktree: would lose merged commits from upstream dependencies (lib)."
    )
    assert plan.node_states[node_id(plan, "app")].status == "failed"


@pytest.mark.asyncio
async def test_clear_worktree_resets_to_base(tmp_path: Path) -> None:
    git = FakeGit()
    runner = _runner(tmp_path, git, FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, {"jobs": [{"producer_id": "a", "work": "true"}]})
    worktree = tmp_path / "wt"
    worktree.mkdir()
    _fail(plan, "a", phase="postchecks", worktree_path=str(worktree), base_commit=BASE)
    state = plan.node_states[node_id(plan, "a")]
    state.step_statuses = {"work": "success"}

    result = await runner.retry_node(plan.id, node_id(plan, "a"), RetryOptions(clear_worktree=True))
    assert result.success
    assert git.resets == [(worktree, BASE)]
    assert state.resume_from_phase is None
    assert state.step_statuses == {}


@pytest.mark.asyncio
async def test_retry_with_new_specs_picks_resume_phase(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(
        runner,
        tmp_path,
        {"jobs": [{"producer_id": "a", "work": "true"}, {"producer_id": "b", "work": "true"}]},
    )
    a, b = node_id(plan, "a"), node_id(plan, "b")
    _fail(plan, "a", phase="postchecks")
    _fail(plan, "b", phase="postchecks")

    await runner.retry_node(plan.id, a, RetryOptions(new_postchecks="pytest -q"))
    await runner.retry_node(plan.id, b, RetryOptions(new_work="make fix"))

    assert plan.node_states[a].resume_from_phase == "postchecks"
    assert plan.nodes[a].postchecks == ShellSpec(command="pytest -q")
    assert plan.node_states[b].resume_from_phase is None
    assert plan.nodes[b].work == ShellSpec(command="make fix")
    assert runner.store.has_node_spec(plan.id, b, "work")


AGENT_JOB = {
    "jobs": [
        {
            "producer_id": "gen",
            "task": "Generate the parser",
            "work": {"type": "agent", "instructions": "Write it"},
        }
    ]
}


@pytest.mark.asyncio
async def test_agent_retry_generates_instructions_from_failure(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, AGENT_JOB)
    nid = node_id(plan, "gen")
    log = tmp_path / "attempt.log"
    log.write_text("compiling\nerror: boom\n", encoding="utf-8")
    _fail(plan, "gen", error="Work failed: exit 1", session_id="sess-1")
    plan.node_states[nid].attempt_history[-1].log_path = str(log)

    context = runner.get_failure_context(plan.id, nid)
    assert context is not None
    assert context.phase == "work"
    assert context.logs[-1].strip() == "error: boom"

    assert (await runner.retry_node(plan.id, nid)).success
    work = plan.nodes[nid].work
    assert isinstance(work, AgentSpec)
    assert work.instructions.startswith("The previous attempt at this task failed.")
    assert "Error: Work failed: exit 1" in work.instructions
    assert "3. Complete the original task: Generate the parser" in work.instructions
    assert plan.node_states[nid].session_id == "sess-1"


@pytest.mark.asyncio
async def test_agent_retry_without_session_keeps_instructions(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, AGENT_JOB)
    nid = node_id(plan, "gen")
    _fail(plan, "gen", session_id="sess-1")

    assert (await runner.retry_node(plan.id, nid, RetryOptions(resume_session=False))).success
    work = plan.nodes[nid].work
    assert isinstance(work, AgentSpec)
    assert work.instructions == "Write it"
    assert plan.node_states[nid].session_id is None


def test_retry_instructions_truncate_long_logs() -> None:
    context = FailureContext(
        node_id="n",
        node_name="gen",
        phase="postchecks",
        error="tests failed",
        logs=["x" * 1500, "y" * 1500],
    )
    text = retry_instructions("build it", context)
    block = text.split("```\n")[1].split("\n```")[0]
    assert block.startswith("...")
    assert len(block) == RETRY_LOG_CHARS + 3
    assert block.endswith("y" * 1500)
    assert "Phase: postchecks" in text


@pytest.mark.asyncio
async def test_force_fail_running_node(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, CHAIN)
    lib = node_id(plan, "lib")

    not_running = await runner.force_fail_node(plan.id, lib)
    assert not_running.error == "Node is not running: ready"

    runner._plans[plan.id].sm.transition(lib, "scheduled")
    runner._plans[plan.id].sm.transition(lib, "running")
    state = plan.node_states[lib]
    state.pid = 4242
    state.attempt_history.append(AttemptRecord(1, "initial"))

    assert (await runner.force_fail_node(plan.id, lib)).success
    assert state.status == "failed"
    assert state.error == FORCE_FAIL_DEFAULT_REASON
    assert state.failure_reason == "user-canceled"
    assert state.pid is None
    assert state.attempt_history[-1].status == "failed"
    assert plan.node_states[node_id(plan, "app")].status == "blocked"


@pytest.mark.asyncio
async def test_initialize_recovers_interrupted_nodes(tmp_path: Path) -> None:
    first = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(
        first,
        tmp_path,
        {
            "jobs": [
                {"producer_id": "dead", "work": "true"},
                {"producer_id": "alive", "work": "true"},
                {"producer_id": "queued", "work": "true"},
            ]
        },
    )
    plan.started_at = "2026-01-01T00:00:00+00:00"
    for producer_id, pid in (("dead", 999), ("alive", 4242)):
        state = plan.node_states[node_id(plan, producer_id)]
        state.status = "running"
        state.pid = pid
        state.attempt_history.append(AttemptRecord(1, "initial"))
    plan.node_states[node_id(plan, "queued")].status = "scheduled"
    first.repository.save_sync(plan)

    second = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    await second.initialize()
    loaded = second.get_plan(plan.id)
    assert loaded is not None

    dead = loaded.node_states[node_id(plan, "dead")]
    assert dead.status == "failed"
    assert dead.failure_reason == "crashed"
    assert dead.error == "Process 999 died unexpectedly (hibernate or crash)"
    assert dead.attempt_history[-1].status == "failed"
    assert loaded.node_states[node_id(plan, "alive")].status == "running"
    assert loaded.node_states[node_id(plan, "queued")].status == "ready"

    on_disk = second.repository.load(plan.id)
    assert on_disk.node_states[node_id(plan, "dead")].status == "failed"


@pytest.mark.asyncio
async def test_delete_removes_plan(tmp_path: Path) -> None:
    runner = _runner(tmp_path, FakeGit(), FakeSpawner(), drive=False)
    plan = await _create(runner, tmp_path, CHAIN)

    assert (await runner.delete(plan.id)).success
    assert runner.get_plan(plan.id) is None
    assert runner.list_plans() == []
    assert not runner.store.exists(plan.id)
    assert (await runner.delete(plan.id)).error == f"Plan not found: {plan.id}"


@pytest.mark.asyncio
async def test_capacity_registration_lifecycle(tmp_path: Path) -> None:
    runner = _runner(
        tmp_path,
        FakeGit(),
        FakeSpawner(),
        drive=False,
        use_capacity=True,
        max_parallel=3,
        process_table=FakeProcessTable(alive={os.getpid()}),
    )
    await runner.initialize()
    registry = tmp_path / "store" / REGISTRY_FILE
    data = json.loads(registry.read_text(encoding="utf-8"))
    assert data["global_max_parallel"] == 3
    assert len(data["instances"]) == 1

    await runner.shutdown()
    assert json.loads(registry.read_text(encoding="utf-8"))["instances"] == {}


class _ThreadRecordingCapacity(GlobalCapacity):
    def __init__(self, storage_path: Path) -> None:
        super().__init__(
            storage_path, global_max_parallel=2, process_table=FakeProcessTable(alive={os.getpid()})
        )
        self.threads: list[int] = []

    def heartbeat(self, running_jobs: int, active_plans: list[str], *, force: bool = False) -> bool:
        self.threads.append(threading.get_ident())
        return super().heartbeat(running_jobs, active_plans, force=force)

    def available(self) -> int:
        self.threads.append(threading.get_ident())
        return super().available()


@pytest.mark.asyncio
async def test_pump_reads_capacity_registry_off_the_event_loop(tmp_path: Path) -> None:
    git = FakeGit()
    capacity = _ThreadRecordingCapacity(tmp_path / "store")
    runner = _runner(tmp_path, git, FakeSpawner(effects=_dirtying(git)), capacity=capacity)
    plan = await _create(runner, tmp_path, {"jobs": [{"producer_id": "app", "work": "make"}]})
    try:
        assert await _complete(runner, plan.id) == "succeeded"
    finally:
        await runner.shutdown()

    assert capacity.threads
    assert threading.get_ident() not in capacity.threads
