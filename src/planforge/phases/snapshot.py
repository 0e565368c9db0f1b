"""Snapshot branch: leaves merge into a per-plan branch, then one final merge lands it.

With ``snapshot: true`` the target branch moves once, after verification
passed on everything the leaves merged. A failed final merge keeps the
snapshot branch so the work can be merged by hand.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import PhaseLog, PhaseResult
from planforge.phases.merge_ri import RefLocks, branch_ref
from planforge.state.model import PlanInstance, SnapshotInfo

logger = logging.getLogger(__name__)

SNAPSHOT_BRANCH_PREFIX = "planforge/snapshot/"
MAX_FINAL_MERGE_ATTEMPTS = 2

Verify = Callable[[str, Path], Awaitable[PhaseResult]]


def snapshot_branch(plan_id: str) -> str:
    return f"{SNAPSHOT_BRANCH_PREFIX}{plan_id}"


def merge_branch(plan: PlanInstance) -> str | None:
    """Branch that leaf merges go into right now."""
    snapshot = plan.snapshot
    if snapshot is not None and snapshot.merge_status != "success":
        return snapshot.branch
    return plan.target_branch


class SnapshotManager:
    def __init__(self, git: GitOperations, ref_locks: RefLocks) -> None:
        self.git = git
        self.ref_locks = ref_locks
        self._lock = asyncio.Lock()

    async def ensure(self, plan: PlanInstance, log: PhaseLog) -> SnapshotInfo | None:
        """Create the snapshot branch from the target on first use; ``None`` when disabled."""
        if not plan.spec.snapshot or not plan.target_branch or not plan.repo_path:
            return None
        async with self._lock:
            current = plan.snapshot
            if current is not None and current.merge_status != "success":
                return current
            repo = Path(plan.repo_path)
            branch = snapshot_branch(plan.id)
            base = await self.git.resolve_ref(repo, branch_ref(plan.target_branch), log.sink)
            await self.git.update_ref(repo, branch_ref(branch), base, None, log.sink)
            snapshot = SnapshotInfo(
                branch=branch,
                worktree_path=str(Path(plan.worktree_root) / f"_snapshot-{plan.id[:8]}"),
                base_commit=base,
            )
            plan.snapshot = snapshot
        log.info(f"Created snapshot branch {branch} from {plan.target_branch} ({base[:8]})")
        logger.info("snapshot created plan=%s branch=%s base=%s", plan.id, branch, base[:8])
        return snapshot

    async def final_merge(
        self, plan: PlanInstance, log: PhaseLog, *, verify: Verify | None = None
    ) -> PhaseResult:
        """Verify the snapshot, then merge it into the target; never raises."""
        snapshot = plan.snapshot
        target = plan.target_branch
        if snapshot is None or snapshot.merge_status == "success":
            return PhaseResult(success=True)
        if not target or not plan.repo_path:
            return self._failed(plan, snapshot, "target branch and repo are required", log)
        repo = Path(plan.repo_path)
        snapshot.merge_status = "running"
        log.section_start("final-merge")
        try:
            if verify is not None:
                verified = await verify(snapshot.branch, Path(snapshot.worktree_path))
                if not verified.success:
                    error = f"Pre-merge verify-ri failed: {verified.error}"
                    return self._failed(plan, snapshot, error, log)
            error = "no attempt made"
            for attempt in range(1, MAX_FINAL_MERGE_ATTEMPTS + 1):
                log.info(f"Final merge attempt {attempt}/{MAX_FINAL_MERGE_ATTEMPTS}")
                try:
                    outcome = await self._merge(repo, plan, snapshot, target, log)
                except GitError as exc:
                    # Usually the target moved under the compare-and-swap; recompute.
                    error = str(exc)
                    log.error(f"Attempt {attempt} failed: {error}")
                    continue
                if not outcome.success:
                    return self._failed(plan, snapshot, outcome.error or "merge failed", log)
                snapshot.merge_status = "success"
                snapshot.merged_commit = outcome.commit
                snapshot.error = None
                await self._delete_branch(repo, snapshot, log)
                return outcome
            error = f"Final merge failed after {MAX_FINAL_MERGE_ATTEMPTS} attempts: {error}"
            return self._failed(plan, snapshot, error, log)
        except Exception as exc:
            logger.exception("final merge raised plan=%s", plan.id)
            return self._failed(plan, snapshot, f"Final merge failed: {exc}", log)
        finally:
            log.section_end("final-merge")

    async def _merge(
        self,
        repo: Path,
        plan: PlanInstance,
        snapshot: SnapshotInfo,
        target: str,
        log: PhaseLog,
    ) -> PhaseResult:
        ref = branch_ref(target)
        async with self.ref_locks.hold(ref):
            source = await self.git.resolve_ref(repo, branch_ref(snapshot.branch), log.sink)
            target_sha = await self.git.resolve_ref(repo, ref, log.sink)
            if source == snapshot.base_commit:
                log.info("Snapshot has no merged work, target left unchanged")
                return PhaseResult(success=True, commit=target_sha)
            if target_sha == snapshot.base_commit:
                log.info(f"Fast-forwarding {target} to snapshot ({source[:8]})")
                await self.git.update_ref(repo, ref, source, target_sha, log.sink)
                return PhaseResult(success=True, commit=source, merged=True)
            log.info(f"Merging snapshot ({source[:8]}) into {target} ({target_sha[:8]})")
            tree = await self.git.merge_tree(repo, target_sha, source, log.sink)
            if not tree.success or tree.tree is None:
                if tree.conflict_files:
                    files = ", ".join(tree.conflict_files)
                    return PhaseResult(
                        success=False,
                        error=f"Final merge has conflicts: {files}",
                        conflict_files=list(tree.conflict_files),
                    )
                return PhaseResult(success=False, error=f"Merge-tree failed: {tree.error}")
            merged = await self.git.commit_tree(
                repo,
                tree.tree,
                [target_sha, source],
                f"Plan {plan.name}: final merge from snapshot",
                log.sink,
            )
            await self.git.update_ref(repo, ref, merged, target_sha, log.sink)
        log.info(f"Updated {target} to {merged[:8]}")
        return PhaseResult(success=True, commit=merged, merged=True)

    async def _delete_branch(self, repo: Path, snapshot: SnapshotInfo, log: PhaseLog) -> None:
        try:
            await self.git.delete_ref(repo, branch_ref(snapshot.branch), log.sink)
        except (GitError, OSError) as exc:
            logger.warning(
                "snapshot branch cleanup failed branch=%s error=%s", snapshot.branch, exc
            )
            log.info(f"Warning: failed to delete snapshot branch: {exc}")

    async def discard(self, plan: PlanInstance) -> None:
        """Drop a pending snapshot branch, e.g. when its plan is deleted."""
        snapshot = plan.snapshot
        if snapshot is None or snapshot.merge_status == "success" or not plan.repo_path:
            return
        await self._delete_branch(Path(plan.repo_path), snapshot, PhaseLog(None))

    def _failed(
        self, plan: PlanInstance, snapshot: SnapshotInfo, error: str, log: PhaseLog
    ) -> PhaseResult:
        snapshot.merge_status = "failed"
        snapshot.error = error
        log.error(error)
        logger.error("final merge failed plan=%s error=%s", plan.id, error)
        return PhaseResult(success=False, error=error, failure_reason="execution-error")
