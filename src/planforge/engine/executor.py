"""Runs one node attempt through the ordered phase pipeline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from planforge.agent.metrics import UsageMetrics, merge_metrics
from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import (
    DependencyCommit,
    PhaseContext,
    PhaseExecutor,
    PhaseLog,
    PhaseResult,
)
from planforge.state.model import (
    PHASE_ORDER,
    AttemptRecord,
    FailureReason,
    JobNode,
    PhaseStatus,
)
from planforge.util.time import now_iso

logger = logging.getLogger(__name__)

_SPEC_PHASES = ("prechecks", "work", "postchecks")
_FAILURE_LABELS = {
    "prechecks": "Prechecks",
    "work": "Work",
    "commit": "Commit",
    "postchecks": "Postchecks",
}


@dataclass(slots=True)
class PipelineRequest:
    plan_id: str
    node: JobNode
    worktree_path: Path
    log: PhaseLog
    repo_path: Path | None = None
    target_branch: str | None = None
    base_commit: str | None = None
    base_commit_at_start: str | None = None
    dependency_commits: list[DependencyCommit] = field(default_factory=list)
    is_leaf: bool = False
    resume_from_phase: str | None = None
    previous_statuses: dict[str, PhaseStatus] = field(default_factory=dict)
    session_id: str | None = None
    env: dict[str, str] | None = None
    record: AttemptRecord | None = None
    cancel_event: asyncio.Event | None = None
    on_pid: Callable[[int], None] | None = None
    on_exit: Callable[[], None] | None = None


@dataclass(slots=True)
class PipelineResult:
    success: bool
    step_statuses: dict[str, PhaseStatus] = field(default_factory=dict)
    failed_phase: str | None = None
    error: str | None = None
    exit_code: int | None = None
    signal: str | None = None
    failure_reason: FailureReason | None = None
    completed_commit: str | None = None
    session_id: str | None = None
    metrics: UsageMetrics | None = None
    merged: bool = False
    canceled: bool = False


class NodeExecutor:
    """Drives merge-fi, setup, prechecks, work, commit, postchecks and merge-ri in order.

    Phases before ``resume_from_phase`` keep the status they had in the
    previous attempt. A phase without a spec is ``skipped``; merge-ri is
    skipped for nodes that are not leaves.
    """

    def __init__(
        self,
        git: GitOperations,
        executors: dict[str, PhaseExecutor],
        *,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        missing = [phase for phase in PHASE_ORDER if phase not in executors]
        if missing:
            raise ValueError(f"missing phase executors: {', '.join(missing)}")
        self.git = git
        self.executors = executors
        self._clock = clock

    def _start_index(self, resume_from_phase: str | None) -> int:
        if resume_from_phase in PHASE_ORDER:
            return PHASE_ORDER.index(resume_from_phase)  # type: ignore[arg-type]
        return 0

    def _set_status(
        self, result: PipelineResult, record: AttemptRecord | None, phase: str, status: PhaseStatus
    ) -> None:
        result.step_statuses[phase] = status
        if record is None:
            return
        record.step_statuses[phase] = status
        timing = record.phase_timing.setdefault(phase, {})
        if status == "running":
            timing["started_at"] = self._clock()
        elif "started_at" in timing:
            timing["ended_at"] = self._clock()

    def _canceled(self, result: PipelineResult, phase: str) -> PipelineResult:
        result.success = False
        result.canceled = True
        result.failed_phase = phase
        result.error = "Execution canceled"
        result.failure_reason = "user-canceled"
        return result

    async def run(self, request: PipelineRequest) -> PipelineResult:
        node = request.node
        log = request.log
        record = request.record
        result = PipelineResult(success=True, session_id=request.session_id)
        start = self._start_index(request.resume_from_phase)
        completed_commit: str | None = None
        if start > PHASE_ORDER.index("commit"):
            completed_commit = await self._resumed_commit(request)

        for index, phase in enumerate(PHASE_ORDER):
            if index < start:
                previous = request.previous_statuses.get(phase)
                if previous is not None:
                    result.step_statuses[phase] = previous
                    if record is not None:
                        record.step_statuses[phase] = previous
                continue
            if request.cancel_event is not None and request.cancel_event.is_set():
                log.info(f"Execution canceled before {phase}")
                return self._canceled(result, phase)

            spec = node.spec_for_phase(phase)
            if phase in _SPEC_PHASES and spec is None:
                log.section_start(phase)
                log.info(f"No {phase} specified - skipping")
                log.section_end(phase)
                self._set_status(result, record, phase, "skipped")
                continue
            if phase == "merge-ri" and not request.is_leaf:
                self._set_status(result, record, phase, "skipped")
                continue

            ctx = PhaseContext(
                node=node,
                plan_id=request.plan_id,
                phase=phase,
                worktree_path=request.worktree_path,
                log=log,
                repo_path=request.repo_path,
                target_branch=request.target_branch,
                base_commit=request.base_commit,
                base_commit_at_start=request.base_commit_at_start,
                completed_commit=completed_commit,
                dependency_commits=list(request.dependency_commits),
                spec=spec,
                env=request.env,
                session_id=result.session_id,
                is_leaf=request.is_leaf,
                cancel_event=request.cancel_event,
                on_pid=request.on_pid,
            )
            self._set_status(result, record, phase, "running")
            log.section_start(phase)
            try:
                outcome = await self.executors[phase].execute(ctx)
            except Exception as exc:
                logger.exception(
                    "phase raised plan=%s node=%s phase=%s", request.plan_id, node.id, phase
                )
                outcome = PhaseResult(
                    success=False, error=str(exc), failure_reason="execution-error"
                )
            finally:
                log.section_end(phase)
                if request.on_exit is not None:
                    request.on_exit()

            result.metrics = merge_metrics(result.metrics, outcome.metrics)
            if outcome.session_id:
                result.session_id = outcome.session_id
            if phase == "commit":
                completed_commit = outcome.commit or request.base_commit
            if phase == "merge-ri":
                result.merged = outcome.merged
            if phase == "postchecks" and outcome.success:
                try:
                    completed_commit = await self._commit_fixes(request) or completed_commit
                except (GitError, OSError) as exc:
                    outcome = PhaseResult(
                        success=False,
                        error=f"could not commit fixes: {exc}",
                        failure_reason="execution-error",
                    )

            if outcome.canceled:
                self._set_status(result, record, phase, "failed")
                return self._canceled(result, phase)
            if not outcome.success:
                self._set_status(result, record, phase, "failed")
                label = _FAILURE_LABELS.get(phase)
                error = outcome.error or "unknown error"
                result.success = False
                result.failed_phase = phase
                result.error = f"{label} failed: {error}" if label else error
                result.exit_code = outcome.exit_code
                result.signal = outcome.signal
                result.failure_reason = outcome.failure_reason or "execution-error"
                result.completed_commit = completed_commit
                return result
            self._set_status(result, record, phase, "success")

        result.completed_commit = completed_commit or request.base_commit
        return result

    async def _commit_fixes(self, request: PipelineRequest) -> str | None:
        """Commit what postchecks left in the worktree; merge-back takes HEAD."""
        worktree = request.worktree_path
        sink = request.log.sink
        if not await self.git.has_uncommitted_changes(worktree, sink):
            return None
        request.log.info("Postchecks changed the worktree, committing fixes")
        await self.git.stage_all(worktree, sink)
        commit = await self.git.commit(worktree, f"{request.node.name}: postchecks fixes", sink)
        request.log.info(f"Committed postchecks fixes ({commit[:8]})")
        return commit

    async def _resumed_commit(self, request: PipelineRequest) -> str | None:
        """HEAD of the worktree when the commit phase ran in an earlier attempt."""
        try:
            return await self.git.get_head(request.worktree_path, request.log.sink)
        except (GitError, OSError) as exc:
            request.log.error(f"Could not read worktree HEAD: {exc}")
            return request.base_commit
