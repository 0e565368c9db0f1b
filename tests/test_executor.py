from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from fakes import FakeGit
from planforge.engine.executor import NodeExecutor, PipelineRequest
from planforge.phases.base import PhaseContext, PhaseLog, PhaseResult
from planforge.state.model import PHASE_ORDER, AttemptRecord, JobNode
from planforge.work.spec import ShellSpec

BASE = "a" * 40


@dataclass
class _Phase:
    name: str
    seen: list[str]
    result: PhaseResult = field(default_factory=lambda: PhaseResult(success=True))
    raises: Exception | None = None

    async def execute(self, ctx: PhaseContext) -> PhaseResult:
        self.seen.append(self.name)
        if self.raises is not None:
            raise self.raises
        return self.result


def _executor(git: FakeGit, seen: list[str], **overrides: PhaseResult | Exception) -> NodeExecutor:
    phases = {}
    for phase in PHASE_ORDER:
        override = overrides.get(phase.replace("-", "_"))
        if isinstance(override, Exception):
            phases[phase] = _Phase(phase, seen, raises=override)
        elif override is not None:
            phases[phase] = _Phase(phase, seen, result=override)
        else:
            phases[phase] = _Phase(phase, seen)
    return NodeExecutor(git, phases, clock=lambda: "2026-01-01T00:00:00+00:00")


def _request(tmp_path: Path, **kwargs: object) -> PipelineRequest:
    node = JobNode(
        id="n1",
        producer_id="build",
        name="build",
        task="Build",
        work=ShellSpec("make"),
        postchecks=ShellSpec("make test"),
    )
    return PipelineRequest(
        plan_id="p1",
        node=node,
        worktree_path=tmp_path,
        log=PhaseLog(None),
        base_commit=BASE,
        **kwargs,  # type: ignore[arg-type]
    )


def test_executor_requires_every_phase(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="missing phase executors: merge-ri"):
        NodeExecutor(FakeGit(), {phase: _Phase(phase, []) for phase in PHASE_ORDER[:-1]})


@pytest.mark.asyncio
async def test_pipeline_runs_phases_in_order_and_skips_missing_specs(tmp_path: Path) -> None:
    seen: list[str] = []
    record = AttemptRecord(attempt_number=1, trigger_type="initial")
    executor = _executor(FakeGit(), seen, commit=PhaseResult(success=True, commit="c" * 40))

    result = await executor.run(_request(tmp_path, is_leaf=True, record=record))

    assert result.success
    assert seen == ["merge-fi", "setup", "work", "commit", "postchecks", "merge-ri"]
    assert result.step_statuses["prechecks"] == "skipped"
    assert result.step_statuses["merge-ri"] == "success"
    assert result.completed_commit == "c" * 40
    assert record.step_statuses == result.step_statuses
    assert record.phase_timing["work"] == {
        "started_at": "2026-01-01T00:00:00+00:00",
        "ended_at": "2026-01-01T00:00:00+00:00",
    }


@pytest.mark.asyncio
async def test_non_leaf_skips_merge_back(tmp_path: Path) -> None:
    seen: list[str] = []
    result = await _executor(FakeGit(), seen).run(_request(tmp_path, is_leaf=False))
    assert "merge-ri" not in seen
    assert result.step_statuses["merge-ri"] == "skipped"
    assert result.completed_commit == BASE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("phase", "message"),
    [
        ("work", "Work failed: Exit code 1"),
        ("commit", "Commit failed: Exit code 1"),
        ("postchecks", "Postchecks failed: Exit code 1"),
        ("merge_ri", "Exit code 1"),
    ],
)
async def test_failure_stops_pipeline_with_phase_label(
    tmp_path: Path, phase: str, message: str
) -> None:
    seen: list[str] = []
    failure = PhaseResult(success=False, error="Exit code 1", exit_code=1)
    executor = _executor(FakeGit(), seen, **{phase: failure})

    result = await executor.run(_request(tmp_path, is_leaf=True))

    failed = phase.replace("_", "-")
    assert not result.success
    assert result.failed_phase == failed
    assert result.error == message
    assert result.exit_code == 1
    assert result.failure_reason == "execution-error"
    assert result.step_statuses[failed] == "failed"
    assert seen[-1] == failed


@pytest.mark.asyncio
async def test_phase_exception_becomes_failure(tmp_path: Path) -> None:
    seen: list[str] = []
    executor = _executor(FakeGit(), seen, setup=RuntimeError("disk full"))

    result = await executor.run(_request(tmp_path))

    assert result.failed_phase == "setup"
    assert result.error == "disk full"
    assert seen == ["merge-fi", "setup"]


@pytest.mark.asyncio
async def test_resume_keeps_earlier_statuses_and_reads_head(tmp_path: Path) -> None:
    seen: list[str] = []
    git = FakeGit()
    git.heads[tmp_path] = "d" * 40
    previous = {
        "merge-fi": "success",
        "setup": "success",
        "prechecks": "skipped",
        "work": "success",
        "commit": "success",
        "postchecks": "failed",
    }

    result = await _executor(git, seen).run(
        _request(
            tmp_path,
            is_leaf=True,
            resume_from_phase="postchecks",
            previous_statuses=previous,
        )
    )

    assert seen == ["postchecks", "merge-ri"]
    assert result.step_statuses["work"] == "success"
    assert result.step_statuses["postchecks"] == "success"
    assert result.completed_commit == "d" * 40


@pytest.mark.asyncio
async def test_cancel_before_phase_stops_pipeline(tmp_path: Path) -> None:
    seen: list[str] = []
    cancel = asyncio.Event()
    cancel.set()

    result = await _executor(FakeGit(), seen).run(_request(tmp_path, cancel_event=cancel))

    assert seen == []
    assert result.canceled
    assert result.error == "Execution canceled"
    assert result.failure_reason == "user-canceled"


@pytest.mark.asyncio
async def test_session_and_metrics_flow_between_phases(tmp_path: Path) -> None:
    seen: list[str] = []
    exits: list[int] = []
    executor = _executor(
        FakeGit(), seen, work=PhaseResult(success=True, session_id="sess-9")
    )

    result = await executor.run(
        _request(tmp_path, session_id="sess-1", on_exit=lambda: exits.append(1))
    )

    assert result.session_id == "sess-9"
    assert len(exits) == len(seen)
