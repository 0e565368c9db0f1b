"""Git operations used by the phase executors.

``GitOperations`` is the seam the engine depends on; ``GitCli`` implements it
with the ``git`` executable. Every method accepts an optional ``log`` sink that
receives one line per command for the node's attempt log.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from planforge.exec.timeout import communicate_with_timeout

logger = logging.getLogger(__name__)

LogSink = Callable[[str], None]

DEFAULT_GIT_TIMEOUT_SEC = 300.0
_CONFLICT_IN_RE = re.compile(r"CONFLICT.*?:\s*Merge conflict in\s+(.+)")
_MODIFY_DELETE_RE = re.compile(r"CONFLICT \((?:modify|rename)/delete\):\s*(.+?)\s+deleted in")


class GitError(RuntimeError):
    def __init__(self, args: Sequence[str], code: int | None, stderr: str) -> None:
        self.git_args = list(args)
        self.code = code
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {code}"
        super().__init__(f"git {' '.join(args[:2])} failed: {detail}")


@dataclass(slots=True)
class GitResult:
    code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.code == 0 and not self.timed_out


@dataclass(slots=True)
class WorktreeTiming:
    base_commit: str
    reused: bool
    total_ms: int


@dataclass(slots=True)
class MergeOutcome:
    success: bool
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class MergeTreeResult:
    success: bool
    tree: str | None = None
    conflict_files: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class DiffStats:
    commits: int = 0
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0


class GitOperations(Protocol):
    async def resolve_ref(self, repo: Path, ref: str, log: LogSink | None = None) -> str: ...

    async def create_or_reuse_detached_worktree(
        self, repo: Path, path: Path, commit: str, log: LogSink | None = None
    ) -> WorktreeTiming: ...

    async def remove_worktree(self, repo: Path, path: Path, log: LogSink | None = None) -> None: ...

    async def has_uncommitted_changes(self, cwd: Path, log: LogSink | None = None) -> bool: ...

    async def status_files(self, cwd: Path, log: LogSink | None = None) -> list[str]: ...

    async def stage_all(self, cwd: Path, log: LogSink | None = None) -> None: ...

    async def commit(self, cwd: Path, message: str, log: LogSink | None = None) -> str: ...

    async def get_head(self, cwd: Path, log: LogSink | None = None) -> str: ...

    async def update_ref(
        self,
        repo: Path,
        ref: str,
        new: str,
        old: str | None = None,
        log: LogSink | None = None,
    ) -> None: ...

    async def delete_ref(self, repo: Path, ref: str, log: LogSink | None = None) -> None: ...

    async def merge(
        self, cwd: Path, commit: str, message: str, log: LogSink | None = None
    ) -> MergeOutcome: ...

    async def abort_merge(self, cwd: Path, log: LogSink | None = None) -> None: ...

    async def has_changes_between(
        self, repo: Path, base: str, head: str, log: LogSink | None = None
    ) -> bool: ...

    async def merge_tree(
        self, repo: Path, target: str, source: str, log: LogSink | None = None
    ) -> MergeTreeResult: ...

    async def commit_tree(
        self,
        repo: Path,
        tree: str,
        parents: Sequence[str],
        message: str,
        log: LogSink | None = None,
    ) -> str: ...

    async def diff_stats(
        self, repo: Path, base: str, head: str, log: LogSink | None = None
    ) -> DiffStats: ...

    async def reset_hard(self, cwd: Path, commit: str, log: LogSink | None = None) -> None: ...

    async def clean(self, cwd: Path, log: LogSink | None = None) -> None: ...

    async def fetch(self, cwd: Path, log: LogSink | None = None) -> None: ...

    async def git_path(self, cwd: Path, name: str, log: LogSink | None = None) -> Path: ...


def parse_conflict_files(output: str) -> list[str]:
    files: list[str] = []
    for line in output.splitlines():
        for pattern in (_CONFLICT_IN_RE, _MODIFY_DELETE_RE):
            match = pattern.search(line)
            if match:
                name = match.group(1).strip()
                if name and name not in files:
                    files.append(name)
    return files


class GitCli:
    def __init__(
        self,
        *,
        executable: str = "git",
        timeout_sec: float | None = DEFAULT_GIT_TIMEOUT_SEC,
        author_name: str | None = None,
        author_email: str | None = None,
    ) -> None:
        self._executable = executable
        self._timeout_sec = timeout_sec
        self._identity: dict[str, str] = {}
        if author_name and author_email:
            self._identity = {
                "GIT_AUTHOR_NAME": author_name,
                "GIT_AUTHOR_EMAIL": author_email,
                "GIT_COMMITTER_NAME": author_name,
                "GIT_COMMITTER_EMAIL": author_email,
            }

    async def _run(
        self,
        args: Sequence[str],
        cwd: Path,
        log: LogSink | None,
        *,
        check: bool = True,
        identity: bool = False,
    ) -> GitResult:
        if log is not None:
            log(f"[git] {' '.join(args)}")
        env = None
        if identity and self._identity:
            env = {**os.environ, **self._identity}
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable,
                *args,
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            raise GitError(args, None, str(exc)) from exc
        timed_out, code, out, err = await communicate_with_timeout(proc, self._timeout_sec)
        result = GitResult(
            code=code,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace") if not timed_out else "timed out",
            timed_out=timed_out,
        )
        if check and not result.ok:
            logger.debug("git failed args=%s code=%s stderr=%s", args, code, result.stderr)
            raise GitError(args, code, result.stderr)
        return result

    async def resolve_ref(self, repo: Path, ref: str, log: LogSink | None = None) -> str:
        result = await self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"], repo, log)
        return result.stdout.strip()

    async def create_or_reuse_detached_worktree(
        self, repo: Path, path: Path, commit: str, log: LogSink | None = None
    ) -> WorktreeTiming:
        started = time.monotonic()
        if (path / ".git").exists():
            head = await self.get_head(path, log)
            if log is not None:
                log(f"[worktree] reusing {path} at {head[:8]}")
            return WorktreeTiming(
                base_commit=commit,
                reused=True,
                total_ms=int((time.monotonic() - started) * 1000),
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        await self._run(["worktree", "add", "--detach", str(path), commit], repo, log)
        return WorktreeTiming(
            base_commit=commit,
            reused=False,
            total_ms=int((time.monotonic() - started) * 1000),
        )

    async def remove_worktree(self, repo: Path, path: Path, log: LogSink | None = None) -> None:
        await self._run(["worktree", "remove", "--force", str(path)], repo, log)
        await self._run(["worktree", "prune"], repo, log, check=False)

    async def has_uncommitted_changes(self, cwd: Path, log: LogSink | None = None) -> bool:
        result = await self._run(["status", "--porcelain"], cwd, log)
        return bool(result.stdout.strip())

    async def status_files(self, cwd: Path, log: LogSink | None = None) -> list[str]:
        result = await self._run(["status", "--porcelain", "-uall"], cwd, log)
        files: list[str] = []
        for line in result.stdout.splitlines():
            name = line[3:].strip()
            if " -> " in name:
                name = name.split(" -> ", 1)[1]
            if name:
                files.append(name.strip('"'))
        return files

    async def stage_all(self, cwd: Path, log: LogSink | None = None) -> None:
        await self._run(["add", "-A"], cwd, log)

    async def commit(self, cwd: Path, message: str, log: LogSink | None = None) -> str:
        await self._run(["commit", "--no-verify", "-m", message], cwd, log, identity=True)
        return await self.get_head(cwd, log)

    async def get_head(self, cwd: Path, log: LogSink | None = None) -> str:
        result = await self._run(["rev-parse", "HEAD"], cwd, log)
        return result.stdout.strip()

    async def update_ref(
        self,
        repo: Path,
        ref: str,
        new: str,
        old: str | None = None,
        log: LogSink | None = None,
    ) -> None:
        args = ["update-ref", ref, new]
        if old is not None:
            args.append(old)
        await self._run(args, repo, log)

    async def delete_ref(self, repo: Path, ref: str, log: LogSink | None = None) -> None:
        await self._run(["update-ref", "-d", ref], repo, log)

    async def merge(
        self, cwd: Path, commit: str, message: str, log: LogSink | None = None
    ) -> MergeOutcome:
        result = await self._run(
            ["merge", "--no-edit", "-m", message, commit], cwd, log, check=False, identity=True
        )
        if result.ok:
            return MergeOutcome(success=True)
        conflicts = await self._run(
            ["diff", "--name-only", "--diff-filter=U"], cwd, log, check=False
        )
        files = [line.strip() for line in conflicts.stdout.splitlines() if line.strip()]
        if not files:
            files = parse_conflict_files(result.stdout)
        return MergeOutcome(
            success=False,
            conflict_files=files,
            error=result.stderr.strip() or result.stdout.strip() or "merge failed",
        )

    async def abort_merge(self, cwd: Path, log: LogSink | None = None) -> None:
        await self._run(["merge", "--abort"], cwd, log, check=False)

    async def has_changes_between(
        self, repo: Path, base: str, head: str, log: LogSink | None = None
    ) -> bool:
        result = await self._run(["diff", "--quiet", base, head], repo, log, check=False)
        if result.timed_out or result.code not in (0, 1):
            raise GitError(["diff", "--quiet"], result.code, result.stderr)
        return result.code == 1

    async def merge_tree(
        self, repo: Path, target: str, source: str, log: LogSink | None = None
    ) -> MergeTreeResult:
        result = await self._run(
            ["merge-tree", "--write-tree", target, source], repo, log, check=False
        )
        if result.ok:
            return MergeTreeResult(success=True, tree=result.stdout.strip().splitlines()[0])
        if "CONFLICT" in result.stdout or "CONFLICT" in result.stderr:
            files = parse_conflict_files(result.stdout)
            return MergeTreeResult(
                success=False,
                conflict_files=files,
                error=f"Merge conflicts in: {', '.join(files)}",
            )
        stderr = result.stderr
        if "unknown option" in stderr or "unrecognized option" in stderr:
            return MergeTreeResult(
                success=False, error="git merge-tree --write-tree requires Git 2.38 or later"
            )
        return MergeTreeResult(
            success=False, error=stderr.strip() or "Merge computation failed for unknown reason"
        )

    async def commit_tree(
        self,
        repo: Path,
        tree: str,
        parents: Sequence[str],
        message: str,
        log: LogSink | None = None,
    ) -> str:
        args = ["commit-tree", tree]
        for parent in parents:
            args.extend(["-p", parent])
        args.extend(["-m", message])
        result = await self._run(args, repo, log, identity=True)
        return result.stdout.strip()

    async def diff_stats(
        self, repo: Path, base: str, head: str, log: LogSink | None = None
    ) -> DiffStats:
        stats = DiffStats()
        count = await self._run(["rev-list", "--count", f"{base}..{head}"], repo, log)
        stats.commits = int(count.stdout.strip() or 0)
        names = await self._run(["diff", "--name-status", base, head], repo, log)
        for line in names.stdout.splitlines():
            kind = line[:1]
            if kind == "A":
                stats.files_added += 1
            elif kind == "D":
                stats.files_deleted += 1
            elif kind in ("M", "R", "C", "T"):
                stats.files_modified += 1
        return stats

    async def reset_hard(self, cwd: Path, commit: str, log: LogSink | None = None) -> None:
        await self._run(["reset", "--hard", commit], cwd, log)

    async def clean(self, cwd: Path, log: LogSink | None = None) -> None:
        await self._run(["clean", "-fd"], cwd, log)

    async def fetch(self, cwd: Path, log: LogSink | None = None) -> None:
        result = await self._run(["fetch", "--all", "--quiet"], cwd, log, check=False)
        if not result.ok and log is not None:
            log(f"[git] fetch failed (ignored): {result.stderr.strip()}")

    async def git_path(self, cwd: Path, name: str, log: LogSink | None = None) -> Path:
        result = await self._run(["rev-parse", "--git-path", name], cwd, log)
        path = Path(result.stdout.strip())
        return path if path.is_absolute() else cwd / path
