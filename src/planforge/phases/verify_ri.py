from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import PhaseContext, PhaseLog, PhaseResult
from planforge.phases.merge_ri import RefLocks, branch_ref
from planforge.phases.work import WorkPhaseExecutor
from planforge.state.model import JobNode, PlanInstance

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now().strftime("%Y%m%d%H%M%S%f")


class VerifyRiExecutor:
    """Run the plan's verification spec against a merged branch: the target or the snapshot.

    Verification happens in an ephemeral detached worktree so the caller's
    checkout is never touched. Fixes produced by the run are committed and
    the branch ref is advanced under the same lock merge-back uses.
    """

    def __init__(
        self,
        git: GitOperations,
        work: WorkPhaseExecutor,
        ref_locks: RefLocks,
        *,
        stamp: Callable[[], str] = _timestamp,
    ) -> None:
        self.git = git
        self.work = work
        self.ref_locks = ref_locks
        self._stamp = stamp

    async def run(
        self,
        plan: PlanInstance,
        log: PhaseLog,
        *,
        branch: str | None = None,
        worktree: Path | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PhaseResult:
        """Verify ``branch`` (the target by default); never raises."""
        spec = plan.spec.verify_ri
        target = branch or plan.target_branch
        if spec is None or not plan.repo_path or not target:
            return PhaseResult(success=True)
        repo = Path(plan.repo_path)
        if worktree is None:
            worktree = repo / ".worktrees" / f"verify-ri-{self._stamp()}"
        ref = branch_ref(target)
        log.section_start("verify-ri")
        try:
            target_sha = await self.git.resolve_ref(repo, ref, log.sink)
            log.info(f"Creating verification worktree at {target} ({target_sha[:8]})")
            await self.git.create_or_reuse_detached_worktree(repo, worktree, target_sha, log.sink)
            ctx = PhaseContext(
                node=JobNode(
                    id=f"verify-{plan.id}", producer_id="verify-ri", name="verify-ri", task=""
                ),
                plan_id=plan.id,
                phase="verify-ri",
                worktree_path=worktree,
                log=log,
                repo_path=repo,
                target_branch=target,
                spec=spec,
                env=plan.env,
                cancel_event=cancel_event,
            )
            result = await self.work.execute(ctx)
            if result.success:
                await self._commit_fixes(repo, worktree, ref, target, target_sha, log)
            return result
        except GitError as exc:
            log.error(f"Verify-RI failed: {exc}")
            return PhaseResult(success=False, error=f"Verification failed: {exc}")
        except Exception as exc:
            logger.exception("verify-ri raised plan=%s", plan.id)
            log.error(f"Verify-RI failed: {exc}")
            return PhaseResult(
                success=False, error=f"Verification failed: {exc}", failure_reason="execution-error"
            )
        finally:
            try:
                await self.git.remove_worktree(repo, worktree, log.sink)
            except (GitError, OSError) as exc:
                logger.warning(
                    "failed to remove verification worktree path=%s error=%s", worktree, exc
                )
                log.info(f"Warning: failed to remove verification worktree: {exc}")
            log.section_end("verify-ri")

    async def _commit_fixes(
        self,
        repo: Path,
        worktree: Path,
        ref: str,
        target: str,
        target_sha: str,
        log: PhaseLog,
    ) -> None:
        if not await self.git.has_uncommitted_changes(worktree, log.sink):
            return
        log.info("Verification produced fixes, committing to target branch")
        await self.git.stage_all(worktree, log.sink)
        fix = await self.git.commit(worktree, f"verify-ri: fix merged state on {target}", log.sink)
        async with self.ref_locks.hold(ref):
            await self.git.update_ref(repo, ref, fix, target_sha, log.sink)
        log.info(f"Updated {target} with verification fix ({fix[:8]})")
