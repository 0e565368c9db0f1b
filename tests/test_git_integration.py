"""GitCli and a full plan run against throwaway repositories."""

from __future__ import annotations

import asyncio
import re
import shutil
import subprocess
from pathlib import Path

import pytest

from planforge.config.loader import parse_plan
from planforge.git.ops import GitCli, GitError, parse_conflict_files
from planforge.runner import PlanRunner

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, capture_output=True, text=True, check=True)
    return proc.stdout.strip()


def _git_version() -> tuple[int, int]:
    out = subprocess.run(["git", "--version"], capture_output=True, text=True, check=True).stdout
    match = re.search(r"(\d+)\.(\d+)", out)
    return (int(match.group(1)), int(match.group(2))) if match else (0, 0)


needs_merge_tree = pytest.mark.skipif(
    shutil.which("git") is None or _git_version() < (2, 38),
    reason="git merge-tree --write-tree needs Git 2.38",
)


def _repo(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.name", "Plan Tester")
    _git(repo, "config", "user.email", "tester@example.com")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / "README.md").write_text("hello\n", encoding="utf-8")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "init")
    return repo


async def _commit_in_worktree(
    git: GitCli, repo: Path, path: Path, base: str, name: str, content: str
) -> str:
    await git.create_or_reuse_detached_worktree(repo, path, base)
    (path / name).write_text(content, encoding="utf-8")
    await git.stage_all(path)
    return await git.commit(path, f"edit {name}")


@pytest.mark.asyncio
async def test_worktree_commit_and_stats(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    git = GitCli()
    base = await git.resolve_ref(repo, "main")
    worktree = tmp_path / "wt" / "node"

    timing = await git.create_or_reuse_detached_worktree(repo, worktree, base)
    assert not timing.reused
    (worktree / "new.txt").write_text("data\n", encoding="utf-8")
    assert await git.has_uncommitted_changes(worktree)
    assert await git.status_files(worktree) == ["new.txt"]

    await git.stage_all(worktree)
    head = await git.commit(worktree, "add new")
    assert head == await git.get_head(worktree)
    assert await git.has_changes_between(repo, base, head)
    stats = await git.diff_stats(repo, base, head)
    assert (stats.commits, stats.files_added, stats.files_modified) == (1, 1, 0)

    again = await git.create_or_reuse_detached_worktree(repo, worktree, base)
    assert again.reused
    await git.remove_worktree(repo, worktree)
    assert not worktree.exists()


@pytest.mark.asyncio
async def test_merge_conflict_lists_files(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    git = GitCli()
    base = await git.resolve_ref(repo, "main")
    ours = await _commit_in_worktree(git, repo, tmp_path / "a", base, "README.md", "ours\n")
    await _commit_in_worktree(git, repo, tmp_path / "b", base, "README.md", "theirs\n")

    outcome = await git.merge(tmp_path / "b", ours, "merge ours")
    assert not outcome.success
    assert outcome.conflict_files == ["README.md"]

    await git.abort_merge(tmp_path / "b")
    assert not await git.has_uncommitted_changes(tmp_path / "b")


@pytest.mark.asyncio
async def test_resolve_unknown_ref_raises(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    with pytest.raises(GitError):
        await GitCli().resolve_ref(repo, "no-such-branch")


@needs_merge_tree
@pytest.mark.asyncio
async def test_merge_tree_and_compare_and_swap_ref(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    git = GitCli()
    base = await git.resolve_ref(repo, "main")
    change = await _commit_in_worktree(git, repo, tmp_path / "a", base, "feature.txt", "f\n")

    result = await git.merge_tree(repo, base, change)
    assert result.success
    assert result.tree
    merged = await git.commit_tree(repo, result.tree, [base, change], "merge feature")
    await git.update_ref(repo, "refs/heads/main", merged, base)
    assert await git.resolve_ref(repo, "main") == merged

    with pytest.raises(GitError):
        await git.update_ref(repo, "refs/heads/main", base, change)


@needs_merge_tree
@pytest.mark.asyncio
async def test_plan_run_lands_work_on_target_branch(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    plan_spec = parse_plan(
        {
            "name": "e2e",
            "jobs": [
                {"producer_id": "gen", "work": "echo generated > gen.txt"},
                {"producer_id": "copy", "work": "cat gen.txt > copy.txt", "dependencies": ["gen"]},
            ],
        }
    )
    runner = PlanRunner(tmp_path / "store", use_capacity=False, pump_interval=0.01)
    plan = await runner.create_plan(plan_spec, repo)
    try:
        status = await asyncio.wait_for(runner.run_until_complete(plan.id), timeout=120)
    finally:
        await runner.shutdown()

    assert status == "succeeded"
    assert _git(repo, "show", "main:copy.txt") == "generated"
    assert plan.work_summary is not None
    assert [job.node_name for job in plan.work_summary.jobs] == ["gen", "copy"]


@needs_merge_tree
@pytest.mark.asyncio
async def test_frequent_liveness_checks_keep_short_jobs_alive(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    jobs = [
        {"producer_id": f"job{i}", "work": f"sleep 0.05; echo hi > out{i}.txt"}
        for i in range(8)
    ]
    runner = PlanRunner(
        tmp_path / "store", use_capacity=False, pump_interval=0.005, watchdog_every=1
    )
    plan = await runner.create_plan(parse_plan({"name": "short", "jobs": jobs}), repo)
    try:
        status = await asyncio.wait_for(runner.run_until_complete(plan.id), timeout=120)
    finally:
        await runner.shutdown()

    assert status == "succeeded"
    assert [s.failure_reason for s in plan.node_states.values()] == [None] * len(jobs)
    for i in range(len(jobs)):
        assert _git(repo, "show", f"main:out{i}.txt") == "hi"


@needs_merge_tree
@pytest.mark.asyncio
async def test_snapshot_plan_moves_target_once(tmp_path: Path) -> None:
    repo = _repo(tmp_path)
    base = _git(repo, "rev-parse", "main")
    plan_spec = parse_plan(
        {
            "name": "snap",
            "snapshot": True,
            "verify_ri": "test -f a.txt && test -f b.txt",
            "jobs": [
                {"producer_id": "a", "work": "echo a > a.txt"},
                {"producer_id": "b", "work": "echo b > b.txt"},
            ],
        }
    )
    runner = PlanRunner(tmp_path / "store", use_capacity=False, pump_interval=0.01)
    plan = await runner.create_plan(plan_spec, repo)
    try:
        status = await asyncio.wait_for(runner.run_until_complete(plan.id), timeout=120)
    finally:
        await runner.shutdown()

    assert status == "succeeded"
    assert plan.snapshot is not None
    assert plan.snapshot.merge_status == "success"
    assert plan.verify_status == "success"
    assert _git(repo, "show", "main:a.txt") == "a"
    assert _git(repo, "show", "main:b.txt") == "b"
    assert _git(repo, "rev-parse", "main~2") == base
    assert _git(repo, "branch", "--list", "planforge/snapshot/*") == ""


def test_parse_conflict_files_from_merge_output() -> None:
    output = "\n".join(
        [
            "Auto-merging src/app.py",
            "CONFLICT (content): Merge conflict in src/app.py",
            "CONFLICT (modify/delete): docs/old.md deleted in HEAD and modified in abc123.",
            "CONFLICT (content): Merge conflict in src/app.py",
        ]
    )
    assert parse_conflict_files(output) == ["src/app.py", "docs/old.md"]
