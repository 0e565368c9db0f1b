"""Merge-back: fold a leaf node's completed commit into the target branch.

The merge is computed with ``git merge-tree --write-tree`` so no checkout is
touched; the branch ref is then moved with a compare-and-swap ``update-ref``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import PhaseContext, PhaseResult

logger = logging.getLogger(__name__)


class RefLocks:
    """One asyncio lock per ref so updates to the same branch are sequenced."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, ref: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(ref, asyncio.Lock())
        async with lock:
            yield


def branch_ref(branch: str) -> str:
    return branch if branch.startswith("refs/") else f"refs/heads/{branch}"


class MergeRiPhaseExecutor:
    def __init__(self, git: GitOperations, ref_locks: RefLocks) -> None:
        self.git = git
        self.ref_locks = ref_locks

    async def execute(self, ctx: PhaseContext) -> PhaseResult:
        if not ctx.is_leaf:
            return PhaseResult(success=True)
        if ctx.repo_path is None:
            return PhaseResult(success=False, error="repo_path is required for merge-back")
        if not ctx.target_branch:
            return PhaseResult(success=False, error="target_branch is required for merge-back")
        if not ctx.completed_commit:
            ctx.log.info("No completed commit, nothing to merge back")
            return PhaseResult(success=True)
        if not ctx.base_commit_at_start:
            return PhaseResult(
                success=False, error="base_commit_at_start is required for merge-back"
            )
        try:
            return await self._merge(ctx)
        except GitError as exc:
            ctx.log.error(f"Merge-back failed: {exc}")
            return PhaseResult(
                success=False,
                error=f"Reverse integration merge failed: {exc}",
                failure_reason="execution-error",
            )

    async def _merge(self, ctx: PhaseContext) -> PhaseResult:
        assert ctx.repo_path is not None and ctx.target_branch and ctx.completed_commit
        assert ctx.base_commit_at_start is not None
        repo = ctx.repo_path
        source = ctx.completed_commit
        sink = ctx.log.sink
        if not await self.git.has_changes_between(repo, ctx.base_commit_at_start, source, sink):
            ctx.log.info(
                f"No changes detected (diff {ctx.base_commit_at_start[:8]}..{source[:8]} is empty)"
            )
            return PhaseResult(success=True)

        ref = branch_ref(ctx.target_branch)
        async with self.ref_locks.hold(ref):
            target_sha = await self.git.resolve_ref(repo, ref, sink)
            ctx.log.info(f"Merging {source[:8]} into {ctx.target_branch} ({target_sha[:8]})")
            tree = await self.git.merge_tree(repo, target_sha, source, sink)
            if not tree.success or tree.tree is None:
                if tree.conflict_files:
                    files = ", ".join(tree.conflict_files)
                    ctx.log.error(f"Merge-back conflicts in: {files}")
                    return PhaseResult(
                        success=False,
                        error=f"Merge conflicts in: {files}",
                        conflict_files=list(tree.conflict_files),
                        failure_reason="execution-error",
                    )
                return PhaseResult(
                    success=False,
                    error=f"Merge-tree failed: {tree.error}",
                    failure_reason="execution-error",
                )
            name = ctx.node.name
            message = f"Plan {name}: merge {name} (commit {source[:8]})"
            merged = await self.git.commit_tree(
                repo, tree.tree, [target_sha, source], message, sink
            )
            await self.git.update_ref(repo, ref, merged, target_sha, sink)
        logger.info("merged back node=%s into %s at %s", ctx.node.id, ctx.target_branch, merged[:8])
        ctx.log.info(f"Updated {ctx.target_branch} to {merged[:8]}")
        return PhaseResult(success=True, commit=merged, merged=True)
