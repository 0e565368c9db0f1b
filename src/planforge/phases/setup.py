from __future__ import annotations

from pathlib import Path

from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import PhaseContext, PhaseResult
from planforge.work.spec import describe_work

ORCHESTRATOR_DIR = ".orchestrator"
EVIDENCE_DIR = f"{ORCHESTRATOR_DIR}/evidence"
EXCLUDE_RULES = (f"/{ORCHESTRATOR_DIR}/*", f"!/{EVIDENCE_DIR}/")


def render_context(ctx: PhaseContext) -> str:
    node = ctx.node
    lines = [
        f"# {node.name}",
        "",
        f"- Node id: `{node.id}`",
        f"- Producer id: `{node.producer_id}`",
        f"- Worktree: `{ctx.worktree_path}`",
        f"- Work: {describe_work(node.work)}",
        "",
        "## Task",
        "",
        node.task or "(no task description)",
        "",
        "## Evidence",
        "",
        "When the task needs no file changes, write a JSON file to",
        f"`{EVIDENCE_DIR}/{node.id}.json` with `summary` and `outcome`",
        "(`completed`, `no-changes-needed`, `verified` or `partial`).",
        "",
    ]
    return "\n".join(lines)


async def _ensure_excluded(git: GitOperations, worktree: Path, ctx: PhaseContext) -> None:
    exclude = await git.git_path(worktree, "info/exclude", ctx.log.sink)
    try:
        existing = exclude.read_text(encoding="utf-8")
    except FileNotFoundError:
        existing = ""
    missing = [rule for rule in EXCLUDE_RULES if rule not in existing.splitlines()]
    if not missing:
        return
    exclude.parent.mkdir(parents=True, exist_ok=True)
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with exclude.open("a", encoding="utf-8") as f:
        f.write(prefix + "\n".join(missing) + "\n")


class SetupPhaseExecutor:
    def __init__(self, git: GitOperations) -> None:
        self.git = git

    async def execute(self, ctx: PhaseContext) -> PhaseResult:
        worktree = ctx.worktree_path
        try:
            (worktree / EVIDENCE_DIR).mkdir(parents=True, exist_ok=True)
            (worktree / ORCHESTRATOR_DIR / "context.md").write_text(
                render_context(ctx), encoding="utf-8"
            )
            await _ensure_excluded(self.git, worktree, ctx)
        except (OSError, GitError) as exc:
            ctx.log.error(f"Setup failed: {exc}")
            return PhaseResult(success=False, error=f"Setup failed: {exc}")
        ctx.log.info(f"Wrote {ORCHESTRATOR_DIR}/context.md")
        return PhaseResult(success=True)
