"""Commit phase: turn the worktree's state into a commit, or justify why there is none.

A no-diff outcome is accepted only for one of the recognized reasons: the
work phase already committed, a valid evidence file exists, the node
declares ``expects_no_changes``, or an AI review judges it legitimate.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

from planforge.agent.delegator import AgentDelegator, AgentRequest
from planforge.agent.metrics import UsageMetrics
from planforge.git.ops import GitError, GitOperations
from planforge.phases.base import PhaseContext, PhaseResult
from planforge.phases.evidence import check_evidence
from planforge.phases.setup import EVIDENCE_DIR
from planforge.work.spec import describe_work

NO_EVIDENCE_ERROR = (
    "No work evidence produced. The node must either:\n"
    "  1. Modify files (results in a commit)\n"
    "  2. Create an evidence file at .orchestrator/evidence/<nodeId>.json\n"
    "  3. Declare expects_no_changes: true in the job spec"
)
REVIEW_LOG_LINES = 150
REVIEW_MODEL = "fast"
_REVIEW_JSON_RE = re.compile(r"\{[^{}]*\"legitimate\"[^{}]*\}", re.DOTALL)


@dataclass(slots=True)
class ReviewVerdict:
    legitimate: bool
    reason: str
    metrics: UsageMetrics | None = None


def parse_review_verdict(text: str) -> tuple[bool, str] | None:
    """Return the last ``{"legitimate": ..., "reason": ...}`` object found in ``text``."""
    for match in reversed(_REVIEW_JSON_RE.findall(text)):
        try:
            data = json.loads(match)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and isinstance(data.get("legitimate"), bool):
            return data["legitimate"], str(data.get("reason") or "")
    return None


def review_instructions(ctx: PhaseContext, log_lines: list[str]) -> str:
    node = ctx.node
    omitted = ""
    if len(log_lines) > REVIEW_LOG_LINES:
        omitted = f"... ({len(log_lines) - REVIEW_LOG_LINES} earlier lines omitted)\n"
        log_lines = log_lines[-REVIEW_LOG_LINES:]
    logs = omitted + "\n".join(log_lines)
    return f"""# AI Review: No-Change Assessment

## Task
You are reviewing the execution logs of a job that completed without making file changes.
Determine if this is a legitimate outcome or if the job failed to do its work.

## Original Task Description
Node: {node.name}
Task: {node.task}
Work: {describe_work(node.work)}

## Execution Logs
```
{logs}
```

## Your Response
Respond ONLY with a JSON object, exactly one of:
{{"legitimate": true, "reason": "Brief explanation why no changes were needed"}}
{{"legitimate": false, "reason": "Brief explanation of what went wrong"}}

Legitimate: the work was already done by a dependency, the task was verification or
analysis only, or the job correctly determined no change was needed.
Not legitimate: the job hit errors and gave up, misunderstood the task, or claimed
success without evidence.
"""


def _only_evidence(files: list[str]) -> bool:
    return all(name.startswith(f"{EVIDENCE_DIR}/") for name in files)


class CommitPhaseExecutor:
    def __init__(self, git: GitOperations, delegator: AgentDelegator | None = None) -> None:
        self.git = git
        self.delegator = delegator

    async def execute(self, ctx: PhaseContext) -> PhaseResult:
        try:
            return await self._commit(ctx)
        except (GitError, OSError) as exc:
            ctx.log.error(f"Commit error: {exc}")
            return PhaseResult(success=False, error=str(exc), failure_reason="execution-error")

    async def _commit(self, ctx: PhaseContext) -> PhaseResult:
        worktree = ctx.worktree_path
        node = ctx.node
        sink = ctx.log.sink
        dirty = await self.git.status_files(worktree, sink)
        if dirty and not _only_evidence(dirty):
            ctx.log.info(f"Staging {len(dirty)} changed file(s)")
            await self.git.stage_all(worktree, sink)
            commit = await self.git.commit(worktree, f"[Plan] {node.task}", sink)
            ctx.log.info(f"Committed: {commit[:8]}")
            return PhaseResult(success=True, commit=commit)

        head = await self.git.get_head(worktree, sink)
        if ctx.base_commit and head != ctx.base_commit:
            ctx.log.info(f"Work made commits, HEAD: {head[:8]}")
            return PhaseResult(success=True, commit=head)

        evidence = check_evidence(worktree, node.id)
        if evidence.evidence is not None and evidence.valid:
            ctx.log.info(f"Evidence file found ({evidence.evidence.outcome}), staging")
            await self.git.stage_all(worktree, sink)
            commit = await self.git.commit(worktree, f"[Plan] {node.task} (evidence only)", sink)
            return PhaseResult(success=True, commit=commit)
        if evidence.present:
            ctx.log.error(f"Evidence file rejected: {'; '.join(evidence.errors)}")

        if node.expects_no_changes:
            ctx.log.info("Node declares expects_no_changes, succeeding without commit")
            return PhaseResult(success=True)

        if self.delegator is not None:
            verdict = await self._review(ctx, worktree)
            if verdict.legitimate:
                ctx.log.info(f"AI review: no changes needed: {verdict.reason}")
                return PhaseResult(success=True, metrics=verdict.metrics)
            ctx.log.info(f"AI review: changes were expected: {verdict.reason}")
            ctx.log.error(NO_EVIDENCE_ERROR)
            return PhaseResult(
                success=False,
                error=NO_EVIDENCE_ERROR,
                metrics=verdict.metrics,
                failure_reason="execution-error",
            )

        ctx.log.error(NO_EVIDENCE_ERROR)
        return PhaseResult(
            success=False, error=NO_EVIDENCE_ERROR, failure_reason="execution-error"
        )

    async def _review(self, ctx: PhaseContext, worktree: Path) -> ReviewVerdict:
        assert self.delegator is not None
        ctx.log.info("========== AI REVIEW: NO-CHANGE ASSESSMENT ==========")
        result = await self.delegator.delegate(
            AgentRequest(
                instructions=review_instructions(ctx, ctx.log.recent()),
                cwd=worktree,
                model=REVIEW_MODEL,
                cancel_event=ctx.cancel_event,
                log_path=ctx.log.path,
            )
        )
        ctx.log.info("========== AI REVIEW: COMPLETE ==========")
        if not result.success:
            ctx.log.info(f"AI review could not complete: {result.error}")
            return ReviewVerdict(False, "AI review unavailable", result.metrics)
        parsed = parse_review_verdict(result.output)
        if parsed is None:
            return ReviewVerdict(False, "AI review gave no verdict", result.metrics)
        return ReviewVerdict(parsed[0], parsed[1], result.metrics)
