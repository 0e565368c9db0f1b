"""Runs a WorkSpec for the prechecks, work and postchecks phases."""

from __future__ import annotations

import time
from pathlib import Path

from planforge.agent.delegator import AgentDelegator, AgentRequest
from planforge.exec.process import ProcessResult, ProcessSpawner
from planforge.phases.base import PhaseContext, PhaseResult
from planforge.work.spec import AgentSpec, ProcessSpec, ShellSpec

NO_DELEGATOR_ERROR = "No agent delegator configured"


def shell_argv(spec: ShellSpec) -> list[str]:
    command = spec.command
    if spec.shell in ("powershell", "pwsh"):
        if spec.error_action is not None:
            command = f"$ErrorActionPreference = '{spec.error_action}'; {command}"
        return [spec.shell, "-NoProfile", "-NonInteractive", "-Command", command]
    if spec.shell == "cmd":
        return ["cmd", "/c", command]
    if spec.shell == "bash":
        return ["bash", "-c", command]
    return ["sh", "-c", command]


def resolve_cwd(spec_cwd: str | None, worktree: Path) -> Path:
    if spec_cwd is None:
        return worktree
    cwd = Path(spec_cwd)
    if cwd.is_absolute():
        return cwd
    return worktree / cwd


def merged_env(*layers: dict[str, str] | None) -> dict[str, str]:
    env: dict[str, str] = {}
    for layer in layers:
        if layer:
            env.update(layer)
    return env


def _process_outcome(result: ProcessResult, timeout_ms: int | None) -> PhaseResult:
    if result.canceled:
        return PhaseResult(
            success=False,
            error="Execution canceled",
            pid=result.pid,
            canceled=True,
            failure_reason="user-canceled",
        )
    if result.timed_out:
        return PhaseResult(
            success=False,
            error=f"Timed out after {timeout_ms}ms",
            pid=result.pid,
            failure_reason="timeout",
        )
    if result.start_failed:
        return PhaseResult(
            success=False,
            error=result.stderr or "failed to start process",
            exit_code=result.exit_code,
            failure_reason="execution-error",
        )
    if result.exit_code == 0:
        return PhaseResult(success=True, exit_code=0, pid=result.pid)
    if result.signal is not None:
        return PhaseResult(
            success=False,
            error=f"Killed by signal {result.signal}",
            exit_code=result.exit_code,
            pid=result.pid,
            signal=result.signal,
            failure_reason="execution-error",
        )
    return PhaseResult(
        success=False,
        error=f"Exit code {result.exit_code}",
        exit_code=result.exit_code,
        pid=result.pid,
        failure_reason="execution-error",
    )


class WorkPhaseExecutor:
    def __init__(
        self,
        spawner: ProcessSpawner,
        delegator: AgentDelegator | None = None,
    ) -> None:
        self.spawner = spawner
        self.delegator = delegator

    async def execute(self, ctx: PhaseContext) -> PhaseResult:
        spec = ctx.spec
        if spec is None:
            return PhaseResult(success=True)
        ctx.log.info(f"Work type: {spec.type}")
        if isinstance(spec, AgentSpec):
            return await self._run_agent(ctx, spec)
        if isinstance(spec, ShellSpec):
            ctx.log.info(f"Command: {spec.command}")
            argv = shell_argv(spec)
        else:
            argv = [spec.executable, *spec.args]
            ctx.log.info(f"Process: {spec.executable}")
            ctx.log.info(f"Arguments: {spec.args}")
        return await self._run_process(ctx, spec, argv)

    async def _run_process(
        self, ctx: PhaseContext, spec: ProcessSpec | ShellSpec, argv: list[str]
    ) -> PhaseResult:
        cwd = resolve_cwd(spec.cwd, ctx.worktree_path)
        ctx.log.info(f"Working directory: {cwd}")
        if spec.env:
            ctx.log.info(f"Environment overrides: {sorted(spec.env)}")
        started = time.monotonic()
        result = await self.spawner.run(
            argv,
            cwd=cwd,
            env=merged_env(ctx.env, spec.env),
            timeout_ms=spec.timeout_ms,
            cancel_event=ctx.cancel_event,
            on_pid=ctx.on_pid,
            log_path=ctx.log.path,
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        ctx.log.info(f"Exited: pid {result.pid}, code {result.exit_code}, duration {elapsed_ms}ms")
        outcome = _process_outcome(result, spec.timeout_ms)
        if not outcome.success:
            ctx.log.error(outcome.error or "failed")
        return outcome

    async def _run_agent(self, ctx: PhaseContext, spec: AgentSpec) -> PhaseResult:
        if self.delegator is None:
            ctx.log.error(NO_DELEGATOR_ERROR)
            return PhaseResult(
                success=False, error=NO_DELEGATOR_ERROR, failure_reason="execution-error"
            )
        ctx.log.info(f"Agent instructions: {spec.instructions}")
        session_id = ctx.session_id if spec.resume_session else None
        if session_id:
            ctx.log.info(f"Resuming agent session: {session_id}")
        if spec.allowed_folders:
            ctx.log.info(f"Agent allowed folders: {', '.join(spec.allowed_folders)}")
        result = await self.delegator.delegate(
            AgentRequest(
                instructions=spec.instructions,
                cwd=ctx.worktree_path,
                model=spec.model or spec.model_tier,
                context_files=list(spec.context_files),
                context=spec.context,
                instructions_file=spec.instructions_file,
                max_turns=spec.max_turns,
                allowed_folders=list(spec.allowed_folders),
                allowed_urls=list(spec.allowed_urls),
                session_id=session_id,
                env=merged_env(ctx.env, spec.env),
                cancel_event=ctx.cancel_event,
                on_pid=ctx.on_pid,
                log_path=ctx.log.path,
            )
        )
        if result.success:
            ctx.log.info("Agent completed successfully")
            if result.session_id:
                ctx.log.info(f"Captured session ID: {result.session_id}")
            return PhaseResult(
                success=True,
                exit_code=result.exit_code,
                pid=result.pid,
                session_id=result.session_id,
                metrics=result.metrics,
            )
        ctx.log.error(f"Agent failed: {result.error}")
        if result.canceled:
            reason = "user-canceled"
        elif result.timed_out:
            reason = "timeout"
        else:
            reason = "execution-error"
        return PhaseResult(
            success=False,
            error=result.error,
            exit_code=result.exit_code,
            pid=result.pid,
            signal=result.signal,
            session_id=result.session_id,
            metrics=result.metrics,
            canceled=result.canceled,
            failure_reason=reason,
        )
