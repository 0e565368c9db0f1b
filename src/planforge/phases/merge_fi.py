from __future__ import annotations

from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import PhaseContext, PhaseResult


class MergeFiPhaseExecutor:
    """Merge the remaining dependency commits into a worktree built from the first."""

    def __init__(self, git: GitOperations) -> None:
        self.git = git

    async def execute(self, ctx: PhaseContext) -> PhaseResult:
        if not ctx.dependency_commits:
            ctx.log.info("No additional dependency commits to merge")
            return PhaseResult(success=True)
        ctx.log.info(f"Merging {len(ctx.dependency_commits)} dependency commit(s) into worktree")
        sink = ctx.log.sink
        for dep in ctx.dependency_commits:
            short = dep.commit[:8]
            ctx.log.info(f"[Merge Source] {dep.node_name} commit {short}")
            try:
                outcome = await self.git.merge(
                    ctx.worktree_path,
                    dep.commit,
                    f"Merge parent commit {short} for job {ctx.node.name}",
                    sink,
                )
            except GitError as exc:
                ctx.log.error(f"Merge error: {exc}")
                return PhaseResult(
                    success=False,
                    error=f"Merge error for dependency {dep.node_name} ({short}): {exc}",
                    failure_reason="execution-error",
                )
            if outcome.success:
                ctx.log.info("Merged successfully")
                continue
            await self.git.abort_merge(ctx.worktree_path, sink)
            if outcome.conflict_files:
                files = ", ".join(outcome.conflict_files)
                ctx.log.error(f"Merge conflict in: {files}")
                return PhaseResult(
                    success=False,
                    error=f"Merge conflict with dependency {dep.node_name} ({short}): {files}",
                    conflict_files=list(outcome.conflict_files),
                    failure_reason="execution-error",
                )
            ctx.log.error(f"Merge failed: {outcome.error}")
            return PhaseResult(
                success=False,
                error=f"Merge failed for dependency {dep.node_name} ({short}): {outcome.error}",
                failure_reason="execution-error",
            )
        return PhaseResult(success=True)
