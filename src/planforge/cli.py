from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, NamedTuple

import typer
from rich.console import Console
from rich.table import Table

from planforge.agent.delegator import CommandAgentDelegator
from planforge.config.loader import load_plan
from planforge.config.schema import PlanSpec
from planforge.dag.validate import assert_acyclic
from planforge.exec.cancel import RequestKind, write_request
from planforge.report.render_md import render_markdown
from planforge.report.summarize import build_summary
from planforge.runner import OpResult, PlanRunner, RetryOptions
from planforge.state.model import PlanInstance, PlanStatus
from planforge.state.status import compute_plan_status
from planforge.store.fs_store import FileSystemPlanStore
from planforge.store.lock import plan_lock, plan_lock_held
from planforge.store.repository import PlanRepository
from planforge.util.errors import PlanError, PlanNotFoundError, RunConflictError, StoreError
from planforge.util.fs import tail_lines, write_text_atomic
from planforge.util.time import elapsed_between

app = typer.Typer(help="Run DAGs of jobs in isolated git worktrees")
console = Console()
logger = logging.getLogger(__name__)

_SYMLINK_HINT_PATTERN = re.compile(r"\bsymlink\w*\b|\bsymbolic(?:[\s_-]+)?link\w*\b", re.IGNORECASE)
_DEFAULT_STORAGE = Path(".planforge")

StorageOption = Annotated[Path, typer.Option("--storage", help="Plan storage directory")]
AgentOption = Annotated[
    str | None, typer.Option("--agent", help="Agent CLI executable used for agent work")
]


RunnerOp = Callable[[PlanRunner], Awaitable[OpResult]]


class _JobRef(NamedTuple):
    id: str
    dependencies: list[str]


def _exit_code_for_status(status: PlanStatus | None) -> int:
    if status == "succeeded":
        return 0
    if status == "canceled":
        return 4
    if status in ("failed", "partial"):
        return 3
    if status in ("paused", "pausing"):
        return 0
    return 2


def _mentions_symlink(detail: str) -> bool:
    return _SYMLINK_HINT_PATTERN.search(detail) is not None


def _render_plan_error(exc: PlanError) -> str:
    detail = str(exc)
    if _mentions_symlink(detail):
        return "invalid plan path"
    return detail


def _render_runtime_error_detail(exc: BaseException) -> str:
    detail = str(exc)
    if _mentions_symlink(detail):
        return "invalid storage path"
    return detail


def _make_runner(
    storage: Path, *, agent: str | None = None, max_parallel: int | None = None
) -> PlanRunner:
    delegator = CommandAgentDelegator(executable=agent) if agent else None
    return PlanRunner(storage, delegator=delegator, max_parallel=max_parallel)


def _plan_dir_or_exit(storage: Path, plan_id: str) -> Path:
    try:
        return FileSystemPlanStore(storage).plan_dir(plan_id)
    except StoreError as exc:
        console.print(f"[red]Invalid plan_id:[/red] {plan_id}")
        raise typer.Exit(2) from exc


def _load_or_exit(storage: Path, plan_id: str) -> PlanInstance:
    _plan_dir_or_exit(storage, plan_id)
    try:
        return PlanRepository(FileSystemPlanStore(storage)).load(plan_id)
    except PlanNotFoundError as exc:
        console.print(f"[red]Plan not found:[/red] {plan_id}")
        raise typer.Exit(2) from exc
    except (StoreError, OSError) as exc:
        console.print(f"[red]Failed to load plan:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc


def _resolve_node_or_exit(plan: PlanInstance, ref: str) -> str:
    if ref in plan.nodes:
        return ref
    node = plan.node_by_producer_id(ref)
    if node is not None:
        return node.id
    for node_id, candidate in plan.nodes.items():
        if candidate.name == ref or node_id.startswith(ref):
            return node_id
    console.print(f"[red]Unknown job:[/red] {ref}")
    raise typer.Exit(2)


def _write_report(plan: PlanInstance, plan_dir: Path) -> Path:
    report_path = plan_dir / "report.md"
    write_text_atomic(report_path, render_markdown(build_summary(plan)) + "\n")
    return report_path


def _print_op(result: OpResult, done: str) -> None:
    if not result.success:
        console.print(f"[red]{result.error}[/red]")
        raise typer.Exit(2)
    console.print(done)


def _with_plan(
    storage: Path, plan_id: str, op: RunnerOp, *, recover: bool = True
) -> OpResult:
    """Load the plan into a short-lived runner under the plan lock and apply ``op``."""

    async def _apply() -> OpResult:
        runner = PlanRunner(storage, use_capacity=False, drive=False)
        await runner.initialize([plan_id], recover=recover)
        try:
            if runner.get_plan(plan_id) is None:
                return OpResult(False, f"Plan not found: {plan_id}")
            return await op(runner)
        finally:
            await runner.shutdown()

    plan_dir = _plan_dir_or_exit(storage, plan_id)
    try:
        with plan_lock(plan_dir, retries=5, retry_interval=0.1):
            return asyncio.run(_apply())
    except RunConflictError as exc:
        console.print(f"[red]Plan is being run by another process:[/red] {plan_id}")
        raise typer.Exit(2) from exc
    except (StoreError, OSError) as exc:
        console.print(f"[red]Operation failed:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc


def _request_or_apply(storage: Path, plan_id: str, kind: RequestKind, op: RunnerOp) -> None:
    plan_dir = _plan_dir_or_exit(storage, plan_id)
    if not plan_dir.is_dir():
        console.print(f"[red]Plan not found:[/red] {plan_id}")
        raise typer.Exit(2)
    if plan_lock_held(plan_dir):
        try:
            write_request(plan_dir, kind)
        except OSError as exc:
            console.print(
                f"[red]Failed to request {kind}:[/red] {_render_runtime_error_detail(exc)}"
            )
            raise typer.Exit(2) from exc
        console.print(f"{kind} requested: [bold]{plan_id}[/bold]")
        return
    _print_op(_with_plan(storage, plan_id, op), f"{kind}: [bold]{plan_id}[/bold]")


def _drive(storage: Path, plan_id: str, *, agent: str | None, max_parallel: int | None) -> None:
    plan_dir = _plan_dir_or_exit(storage, plan_id)

    async def _run() -> tuple[PlanStatus | None, PlanInstance | None]:
        runner = _make_runner(storage, agent=agent, max_parallel=max_parallel)
        try:
            await runner.initialize([plan_id])
            if runner.get_plan(plan_id) is None:
                return None, None
            plan = runner.get_plan(plan_id)
            if plan is not None and plan.is_paused:
                await runner.resume(plan_id)
            status = await runner.run_until_complete(plan_id)
            return status, runner.get_plan(plan_id)
        finally:
            await runner.shutdown()

    try:
        with plan_lock(plan_dir):
            status, plan = asyncio.run(_run())
    except RunConflictError as exc:
        console.print(f"[red]Plan is already running in another process:[/red] {plan_id}")
        raise typer.Exit(2) from exc
    except (StoreError, OSError) as exc:
        console.print(f"[red]Run execution failed:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc

    if plan is None:
        console.print(f"[red]Plan not found:[/red] {plan_id}")
        raise typer.Exit(2)
    try:
        report_path = _write_report(plan, plan_dir)
    except OSError as exc:
        console.print(
            f"[yellow]Warning:[/yellow] failed to write report: {_render_runtime_error_detail(exc)}"
        )
        report_path = plan_dir / "report.md"
    console.print(f"plan_id: [bold]{plan_id}[/bold]")
    console.print(f"state: [bold]{status}[/bold]")
    console.print(f"report: {report_path}")
    raise typer.Exit(_exit_code_for_status(status))


@app.callback()
def main(verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def create(
    plan_path: Annotated[Path, typer.Argument(exists=True)],
    repo: Annotated[Path, typer.Option("--repo")] = Path("."),
    storage: StorageOption = _DEFAULT_STORAGE,
    start: Annotated[bool, typer.Option("--start", help="Run the plan right away")] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
    agent: AgentOption = None,
    max_parallel: Annotated[int | None, typer.Option("--max-parallel", min=1)] = None,
) -> None:
    try:
        spec = load_plan(plan_path)
        order = assert_acyclic(
            [_JobRef(job.producer_id, list(job.dependencies)) for job in spec.jobs]
        )
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc

    if dry_run:
        table = Table(title=f"Dry Run - {spec.name}")
        table.add_column("#")
        table.add_column("producer_id")
        table.add_column("depends on")
        jobs = {job.producer_id: job for job in spec.jobs}
        for idx, producer_id in enumerate(order, start=1):
            table.add_row(str(idx), producer_id, ", ".join(jobs[producer_id].dependencies) or "-")
        console.print(table)
        raise typer.Exit(0)

    repo_path = repo.resolve()
    if not repo_path.is_dir():
        console.print(f"[red]Invalid repo:[/red] {repo}")
        raise typer.Exit(2)

    plan = _create(storage, spec, repo_path)
    console.print(f"plan_id: [bold]{plan.id}[/bold]")
    console.print(f"jobs: {len(plan.nodes)}")
    if start:
        _drive(storage, plan.id, agent=agent, max_parallel=max_parallel)


def _create(storage: Path, spec: PlanSpec, repo_path: Path) -> PlanInstance:
    async def _apply() -> PlanInstance:
        runner = PlanRunner(storage, use_capacity=False, drive=False)
        return await runner.create_plan(spec, repo_path)

    try:
        return asyncio.run(_apply())
    except PlanError as exc:
        console.print(f"[red]Plan validation error:[/red] {_render_plan_error(exc)}")
        raise typer.Exit(2) from exc
    except (StoreError, OSError) as exc:
        console.print(f"[red]Failed to create plan:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc


@app.command()
def run(
    plan_id: Annotated[str, typer.Argument()],
    storage: StorageOption = _DEFAULT_STORAGE,
    agent: AgentOption = None,
    max_parallel: Annotated[int | None, typer.Option("--max-parallel", min=1)] = None,
) -> None:
    _drive(storage, plan_id, agent=agent, max_parallel=max_parallel)


@app.command()
def status(
    plan_id: Annotated[str, typer.Argument()],
    storage: StorageOption = _DEFAULT_STORAGE,
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    plan = _load_or_exit(storage, plan_id)
    summary = build_summary(plan)
    if as_json:
        typer.echo(json.dumps(summary, ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    table = Table(title=f"{plan.name} ({plan.id}): {summary['plan']['status']}")
    table.add_column("job")
    table.add_column("status")
    table.add_column("attempts", justify="right")
    table.add_column("phase")
    table.add_column("duration_sec", justify="right")
    table.add_column("commit")
    for node_id, node in plan.nodes.items():
        state = plan.node_states[node_id]
        running = [phase for phase, value in state.step_statuses.items() if value == "running"]
        last = state.last_attempt
        phase = running[0] if running else (last.failed_phase if last is not None else None)
        duration = elapsed_between(state.started_at, state.ended_at)
        table.add_row(
            node.name,
            state.status,
            str(state.attempts),
            phase or "-",
            "-" if duration is None else str(duration),
            state.completed_commit[:8] if state.completed_commit else "-",
        )
    console.print(table)


@app.command("list")
def list_plans(storage: StorageOption = _DEFAULT_STORAGE) -> None:
    try:
        plans = PlanRepository(FileSystemPlanStore(storage)).list_plans()
    except (StoreError, OSError) as exc:
        console.print(f"[red]Failed to list plans:[/red] {_render_runtime_error_detail(exc)}")
        raise typer.Exit(2) from exc
    table = Table(title="Plans")
    table.add_column("plan_id")
    table.add_column("name")
    table.add_column("status")
    table.add_column("jobs", justify="right")
    table.add_column("created")
    for metadata in sorted(plans, key=lambda item: item.created_at):
        plan_status = compute_plan_status(
            metadata.node_states.values(),
            has_started=metadata.started_at is not None,
            is_paused=metadata.is_paused,
        )
        table.add_row(
            metadata.id,
            metadata.spec.name,
            "scaffolding" if metadata.scaffolding else plan_status,
            str(len(metadata.jobs)),
            metadata.created_at,
        )
    console.print(table)


@app.command()
def logs(
    plan_id: Annotated[str, typer.Argument()],
    storage: StorageOption = _DEFAULT_STORAGE,
    node: Annotated[str | None, typer.Option("--node")] = None,
    tail: Annotated[int, typer.Option("--tail", min=1)] = 100,
) -> None:
    plan = _load_or_exit(storage, plan_id)
    node_ids = [_resolve_node_or_exit(plan, node)] if node else list(plan.nodes)
    for node_id in node_ids:
        last = plan.node_states[node_id].last_attempt
        lines = tail_lines(Path(last.log_path), tail) if last and last.log_path else []
        attempt = last.attempt_number if last is not None else "-"
        console.rule(f"{plan.nodes[node_id].name} :: attempt {attempt}")
        console.print("\n".join(lines) if lines else "(empty)", markup=False)


@app.command()
def pause(
    plan_id: Annotated[str, typer.Argument()], storage: StorageOption = _DEFAULT_STORAGE
) -> None:
    _request_or_apply(storage, plan_id, "pause", lambda runner: runner.pause(plan_id))


@app.command()
def resume(
    plan_id: Annotated[str, typer.Argument()], storage: StorageOption = _DEFAULT_STORAGE
) -> None:
    _request_or_apply(storage, plan_id, "resume", lambda runner: runner.resume(plan_id))


@app.command()
def cancel(
    plan_id: Annotated[str, typer.Argument()], storage: StorageOption = _DEFAULT_STORAGE
) -> None:
    _request_or_apply(storage, plan_id, "cancel", lambda runner: runner.cancel(plan_id))


@app.command()
def retry(
    plan_id: Annotated[str, typer.Argument()],
    storage: StorageOption = _DEFAULT_STORAGE,
    node: Annotated[str | None, typer.Option("--node")] = None,
    clear_worktree: Annotated[bool, typer.Option("--clear-worktree")] = False,
    new_work: Annotated[str | None, typer.Option("--work", help="Replacement work")] = None,
    new_session: Annotated[bool, typer.Option("--new-session")] = False,
) -> None:
    if node is None:
        if clear_worktree or new_work is not None:
            console.print("[red]--clear-worktree and --work need --node[/red]")
            raise typer.Exit(2)
        result = _with_plan(storage, plan_id, lambda runner: runner.retry_plan(plan_id))
        _print_op(result, f"retry queued: [bold]{plan_id}[/bold]")
        return
    node_id = _resolve_node_or_exit(_load_or_exit(storage, plan_id), node)
    options = RetryOptions(
        new_work=new_work,
        clear_worktree=clear_worktree,
        resume_session=False if new_session else None,
    )
    result = _with_plan(
        storage, plan_id, lambda runner: runner.retry_node(plan_id, node_id, options)
    )
    _print_op(result, f"retry queued: [bold]{plan_id}[/bold] {node}")


@app.command("force-fail")
def force_fail(
    plan_id: Annotated[str, typer.Argument()],
    node: Annotated[str, typer.Argument()],
    storage: StorageOption = _DEFAULT_STORAGE,
    reason: Annotated[str | None, typer.Option("--reason")] = None,
) -> None:
    node_id = _resolve_node_or_exit(_load_or_exit(storage, plan_id), node)
    result = _with_plan(
        storage,
        plan_id,
        lambda runner: runner.force_fail_node(plan_id, node_id, reason),
        recover=False,
    )
    _print_op(result, f"force-failed: [bold]{node}[/bold]")


@app.command()
def delete(
    plan_id: Annotated[str, typer.Argument()],
    storage: StorageOption = _DEFAULT_STORAGE,
    yes: Annotated[bool, typer.Option("--yes", "-y")] = False,
) -> None:
    plan = _load_or_exit(storage, plan_id)
    if not yes and not typer.confirm(f"Delete plan {plan.name} ({plan_id})?"):
        raise typer.Exit(1)
    result = _with_plan(storage, plan_id, lambda runner: runner.delete(plan_id))
    _print_op(result, f"deleted: [bold]{plan_id}[/bold]")


if __name__ == "__main__":
    app()
