"""Hand agent work to an external agent CLI.

``CommandAgentDelegator`` runs the CLI in JSON output mode:

    <executable> -p <prompt> [--model M] [--resume S] [--max-turns N]
                 [--add-dir D ...] --output-format json

and reads the last ``type == "result"`` event of the envelope for the session
id, usage and error flag. The envelope is either one JSON array or JSON lines.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from planforge.agent.metrics import ModelUsage, TokenUsage, UsageMetrics
from planforge.exec.process import ProcessSpawner, SubprocessSpawner
from planforge.util.coerce import as_dict, as_int, as_optional_int, as_optional_str, pick

logger = logging.getLogger(__name__)

DEFAULT_AGENT_EXECUTABLE = "claude"
MODEL_TIER_DEFAULTS = {"fast": "haiku", "standard": "sonnet", "premium": "opus"}


@dataclass(slots=True)
class AgentRequest:
    instructions: str
    cwd: Path
    model: str | None = None
    context_files: list[str] = field(default_factory=list)
    context: str | None = None
    instructions_file: str | None = None
    max_turns: int | None = None
    allowed_folders: list[str] = field(default_factory=list)
    allowed_urls: list[str] = field(default_factory=list)
    session_id: str | None = None
    env: Mapping[str, str] | None = None
    timeout_ms: int | None = None
    cancel_event: asyncio.Event | None = None
    on_pid: Callable[[int], None] | None = None
    log_path: Path | None = None


@dataclass(slots=True)
class AgentResult:
    success: bool
    error: str | None = None
    session_id: str | None = None
    metrics: UsageMetrics | None = None
    output: str = ""
    exit_code: int | None = None
    pid: int | None = None
    signal: str | None = None
    timed_out: bool = False
    canceled: bool = False


class AgentDelegator(Protocol):
    async def delegate(self, request: AgentRequest) -> AgentResult: ...


def compose_prompt(request: AgentRequest) -> str:
    parts = [request.instructions.strip()]
    if request.instructions_file:
        parts.append(f"Read the full instructions in `{request.instructions_file}`.")
    if request.context:
        parts.append(f"## Context\n\n{request.context.strip()}")
    if request.context_files:
        listed = "\n".join(f"- {name}" for name in request.context_files)
        parts.append(f"## Relevant files\n\n{listed}")
    if request.allowed_urls:
        listed = "\n".join(f"- {url}" for url in request.allowed_urls)
        parts.append(f"## Allowed URLs\n\n{listed}")
    return "\n\n".join(part for part in parts if part)


def parse_envelope(stdout: str) -> list[dict[str, Any]]:
    text = stdout.strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        events: list[dict[str, Any]] = []
        for line in text.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                events.append(item)
        return events
    if isinstance(parsed, list):
        return [item for item in parsed if isinstance(item, dict)]
    if isinstance(parsed, dict):
        return [parsed]
    return []


def find_result_event(events: list[dict[str, Any]]) -> dict[str, Any] | None:
    for event in reversed(events):
        if event.get("type") == "result":
            return event
    return None


def _tokens_from(raw: object) -> TokenUsage:
    data = as_dict(raw)
    return TokenUsage(
        input_tokens=as_int(pick(data, "input_tokens", "inputTokens")),
        output_tokens=as_int(pick(data, "output_tokens", "outputTokens")),
        cache_read_tokens=as_int(pick(data, "cache_read_input_tokens", "cacheReadInputTokens")),
        cache_write_tokens=as_int(
            pick(data, "cache_creation_input_tokens", "cacheCreationInputTokens")
        ),
    )


def metrics_from_result(event: Mapping[str, Any]) -> UsageMetrics:
    breakdown = [
        ModelUsage(model=name, tokens=_tokens_from(usage))
        for name, usage in as_dict(pick(dict(event), "modelUsage", "model_usage")).items()
    ]
    return UsageMetrics(
        tokens=_tokens_from(event.get("usage")),
        model_breakdown=breakdown,
        turns=as_optional_int(event.get("num_turns")),
        tool_calls=as_optional_int(event.get("num_tool_calls")),
        duration_ms=as_optional_int(event.get("duration_ms")),
    )


class CommandAgentDelegator:
    def __init__(
        self,
        *,
        executable: str = DEFAULT_AGENT_EXECUTABLE,
        spawner: ProcessSpawner | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self._executable = executable
        self._spawner = spawner or SubprocessSpawner()
        self._extra_args = list(extra_args or [])

    def build_argv(self, request: AgentRequest) -> list[str]:
        argv = [self._executable, "-p", compose_prompt(request)]
        if request.model:
            argv.extend(["--model", MODEL_TIER_DEFAULTS.get(request.model, request.model)])
        if request.session_id:
            argv.extend(["--resume", request.session_id])
        if request.max_turns is not None:
            argv.extend(["--max-turns", str(request.max_turns)])
        for folder in request.allowed_folders:
            argv.extend(["--add-dir", folder])
        argv.extend(self._extra_args)
        # The CLI is sensitive to flag order; the output format goes last.
        argv.extend(["--output-format", "json"])
        return argv

    async def delegate(self, request: AgentRequest) -> AgentResult:
        argv = self.build_argv(request)
        logger.info("delegating to agent cwd=%s model=%s", request.cwd, request.model)
        result = await self._spawner.run(
            argv,
            cwd=request.cwd,
            env=request.env,
            timeout_ms=request.timeout_ms,
            cancel_event=request.cancel_event,
            on_pid=request.on_pid,
            log_path=request.log_path,
        )
        event = find_result_event(parse_envelope(result.stdout))
        metrics = metrics_from_result(event) if event is not None else None
        session_id = as_optional_str(event.get("session_id")) if event is not None else None
        output = as_optional_str(event.get("result")) if event is not None else None
        output = output if output is not None else result.stdout.strip()

        error: str | None = None
        if result.start_failed:
            error = result.stderr or "failed to start agent"
        elif result.canceled:
            error = "Execution canceled"
        elif result.timed_out:
            error = f"Timed out after {request.timeout_ms}ms"
        elif result.signal is not None:
            error = f"Agent killed by signal {result.signal}"
        elif result.exit_code != 0:
            error = f"Agent exited with code {result.exit_code}"
        elif event is None:
            error = "Agent produced no result event"
        elif event.get("is_error") is True:
            error = output or "Agent reported an error"

        return AgentResult(
            success=error is None,
            error=error,
            session_id=session_id,
            metrics=metrics,
            output=output,
            exit_code=result.exit_code,
            pid=result.pid,
            signal=result.signal,
            timed_out=result.timed_out,
            canceled=result.canceled,
        )
