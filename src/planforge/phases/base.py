from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from planforge.agent.metrics import UsageMetrics
from planforge.state.model import FailureReason, JobNode
from planforge.util.fs import append_text_best_effort
from planforge.util.time import now_iso
from planforge.work.spec import WorkSpec

RECENT_LINES_LIMIT = 500


class PhaseLog:
    """Writes one node attempt's log file and keeps its recent lines in memory.

    Writes are best-effort; a log that cannot be written never fails a node.
    """

    def __init__(self, path: Path | None, *, phase: str = "") -> None:
        self.path = path
        self.phase = phase
        self._recent: deque[str] = deque(maxlen=RECENT_LINES_LIMIT)

    def _write(self, level: str, message: str) -> None:
        prefix = f"[{now_iso()}] [{level}]"
        if self.phase:
            prefix += f" [{self.phase}]"
        for line in message.splitlines() or [""]:
            self._recent.append(f"[{self.phase}] {line}")
            if self.path is not None:
                append_text_best_effort(self.path, f"{prefix} {line}\n")

    def info(self, message: str) -> None:
        self._write("INFO", message)

    def error(self, message: str) -> None:
        self._write("ERROR", message)

    def section_start(self, phase: str) -> None:
        self.phase = phase
        self.info(f"========== {phase.upper()} SECTION START ==========")

    def section_end(self, phase: str) -> None:
        self.info(f"========== {phase.upper()} SECTION END ==========")

    def recent(self, limit: int | None = None) -> list[str]:
        lines = list(self._recent)
        return lines[-limit:] if limit is not None else lines

    def sink(self, line: str) -> None:
        self.info(line)


@dataclass(slots=True)
class DependencyCommit:
    node_id: str
    node_name: str
    commit: str


@dataclass(slots=True)
class PhaseContext:
    node: JobNode
    plan_id: str
    phase: str
    worktree_path: Path
    log: PhaseLog
    repo_path: Path | None = None
    target_branch: str | None = None
    base_commit: str | None = None
    base_commit_at_start: str | None = None
    completed_commit: str | None = None
    dependency_commits: list[DependencyCommit] = field(default_factory=list)
    spec: WorkSpec | None = None
    env: dict[str, str] | None = None
    session_id: str | None = None
    is_leaf: bool = False
    cancel_event: asyncio.Event | None = None
    on_pid: Callable[[int], None] | None = None


@dataclass(slots=True)
class PhaseResult:
    success: bool
    error: str | None = None
    commit: str | None = None
    exit_code: int | None = None
    pid: int | None = None
    signal: str | None = None
    session_id: str | None = None
    metrics: UsageMetrics | None = None
    conflict_files: list[str] = field(default_factory=list)
    failure_reason: FailureReason | None = None
    canceled: bool = False
    merged: bool = False


class PhaseExecutor(Protocol):
    async def execute(self, ctx: PhaseContext) -> PhaseResult: ...
