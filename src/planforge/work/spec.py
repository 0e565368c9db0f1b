"""Work specifications: what a node phase executes.

A ``WorkSpec`` is exactly one of ``ProcessSpec``, ``ShellSpec`` or
``AgentSpec``. Freeform strings coming from plan files or older stored plans
are upgraded by :func:`normalize_work_spec`; nothing else in the package
inspects raw strings.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Literal, Union

from planforge.util.coerce import (
    as_bool,
    as_dict,
    as_list_str,
    as_optional_int,
    as_optional_literal,
    as_optional_str,
    as_str,
    as_str_map,
    pick,
)

AGENT_MARKER = "@agent"
DEFAULT_AGENT_INSTRUCTIONS = "Complete the task as specified"

ShellKind = Literal["cmd", "powershell", "pwsh", "bash", "sh"]
SHELL_KINDS: set[str] = {"cmd", "powershell", "pwsh", "bash", "sh"}
ErrorAction = Literal["Continue", "Stop", "SilentlyContinue"]
ERROR_ACTIONS: set[str] = {"Continue", "Stop", "SilentlyContinue"}
ModelTier = Literal["fast", "standard", "premium"]
MODEL_TIERS: set[str] = {"fast", "standard", "premium"}
ResumePhase = Literal["prechecks", "work", "postchecks"]
RESUME_PHASES: set[str] = {"prechecks", "work", "postchecks"}


@dataclass(slots=True)
class OnFailureConfig:
    no_auto_heal: bool = False
    message: str | None = None
    resume_from_phase: str | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {"no_auto_heal": self.no_auto_heal}
        if self.message is not None:
            data["message"] = self.message
        if self.resume_from_phase is not None:
            data["resume_from_phase"] = self.resume_from_phase
        return data

    @classmethod
    def from_dict(cls, data: object) -> OnFailureConfig | None:
        if not isinstance(data, dict):
            return None
        return cls(
            no_auto_heal=as_bool(pick(data, "no_auto_heal", "noAutoHeal")),
            message=as_optional_str(data.get("message")),
            resume_from_phase=as_optional_literal(
                pick(data, "resume_from_phase", "resumeFromPhase"), RESUME_PHASES
            ),
        )


@dataclass(slots=True)
class ProcessSpec:
    executable: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None
    timeout_ms: int | None = None
    on_failure: OnFailureConfig | None = None
    type: Literal["process"] = "process"


@dataclass(slots=True)
class ShellSpec:
    command: str
    shell: ShellKind | None = None
    error_action: ErrorAction | None = None
    env: dict[str, str] | None = None
    cwd: str | None = None
    timeout_ms: int | None = None
    on_failure: OnFailureConfig | None = None
    type: Literal["shell"] = "shell"


@dataclass(slots=True)
class AgentSpec:
    instructions: str
    instructions_file: str | None = None
    model: str | None = None
    model_tier: ModelTier | None = None
    context_files: list[str] = field(default_factory=list)
    max_turns: int | None = None
    context: str | None = None
    resume_session: bool = True
    allowed_folders: list[str] = field(default_factory=list)
    allowed_urls: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    on_failure: OnFailureConfig | None = None
    type: Literal["agent"] = "agent"


WorkSpec = Union[ProcessSpec, ShellSpec, AgentSpec]


def _timeout_ms(data: dict[str, object]) -> int | None:
    value = as_optional_int(pick(data, "timeout_ms", "timeoutMs", "timeout"))
    if value is None or value <= 0:
        return None
    return value


def _process_from_dict(data: dict[str, object]) -> ProcessSpec:
    return ProcessSpec(
        executable=as_str(data.get("executable")),
        args=as_list_str(data.get("args")),
        env=as_str_map(data.get("env")),
        cwd=as_optional_str(data.get("cwd")),
        timeout_ms=_timeout_ms(data),
        on_failure=OnFailureConfig.from_dict(pick(data, "on_failure", "onFailure")),
    )


def _shell_from_dict(data: dict[str, object]) -> ShellSpec:
    return ShellSpec(
        command=as_str(data.get("command")),
        shell=as_optional_literal(data.get("shell"), SHELL_KINDS),  # type: ignore[arg-type]
        error_action=as_optional_literal(  # type: ignore[arg-type]
            pick(data, "error_action", "errorAction"), ERROR_ACTIONS
        ),
        env=as_str_map(data.get("env")),
        cwd=as_optional_str(data.get("cwd")),
        timeout_ms=_timeout_ms(data),
        on_failure=OnFailureConfig.from_dict(pick(data, "on_failure", "onFailure")),
    )


def _agent_from_dict(data: dict[str, object]) -> AgentSpec:
    instructions = as_str(data.get("instructions")).strip()
    instructions_file = as_optional_str(pick(data, "instructions_file", "instructionsFile"))
    if not instructions and instructions_file is None:
        instructions = DEFAULT_AGENT_INSTRUCTIONS
    max_turns = as_optional_int(pick(data, "max_turns", "maxTurns"))
    return AgentSpec(
        instructions=instructions,
        instructions_file=instructions_file,
        model=as_optional_str(data.get("model")),
        model_tier=as_optional_literal(  # type: ignore[arg-type]
            pick(data, "model_tier", "modelTier"), MODEL_TIERS
        ),
        context_files=as_list_str(pick(data, "context_files", "contextFiles")),
        max_turns=max_turns if max_turns is None or max_turns > 0 else None,
        context=as_optional_str(data.get("context")),
        resume_session=as_bool(pick(data, "resume_session", "resumeSession"), True),
        allowed_folders=as_list_str(pick(data, "allowed_folders", "allowedFolders")),
        allowed_urls=as_list_str(pick(data, "allowed_urls", "allowedUrls")),
        env=as_str_map(data.get("env")),
        on_failure=OnFailureConfig.from_dict(pick(data, "on_failure", "onFailure")),
    )


def work_spec_from_dict(data: dict[str, object]) -> WorkSpec | None:
    kind = data.get("type")
    if kind == "process":
        return _process_from_dict(data)
    if kind == "shell":
        return _shell_from_dict(data)
    if kind == "agent":
        return _agent_from_dict(data)
    if "command" in data:
        return _shell_from_dict(data)
    if "executable" in data:
        return _process_from_dict(data)
    if "instructions" in data:
        return _agent_from_dict(data)
    return None


def _parse_json_spec(raw: str) -> WorkSpec | None:
    end = raw.rfind("}")
    if end < 0:
        return None
    try:
        data = json.loads(raw[: end + 1])
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return work_spec_from_dict(as_dict(data))


def normalize_work_spec(raw: object) -> WorkSpec | None:
    """Upgrade any accepted input form into a structured WorkSpec.

    Strings starting with ``{`` are parsed as JSON, strings starting with
    ``@agent`` become agent specs, and any other string is a shell command.
    Mappings are dispatched on ``type``. Already structured specs pass through.
    """
    if raw is None:
        return None
    if isinstance(raw, (ProcessSpec, ShellSpec, AgentSpec)):
        return raw
    if isinstance(raw, dict):
        return work_spec_from_dict(as_dict(raw))
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    if text.startswith("{"):
        parsed = _parse_json_spec(text)
        if parsed is not None:
            return parsed
        return ShellSpec(command=text)
    if text.startswith(AGENT_MARKER):
        instructions = text[len(AGENT_MARKER) :].strip()
        return AgentSpec(instructions=instructions or DEFAULT_AGENT_INSTRUCTIONS)
    return ShellSpec(command=text)


def work_spec_to_dict(spec: WorkSpec) -> dict[str, object]:
    data: dict[str, object] = {"type": spec.type}
    if isinstance(spec, ProcessSpec):
        data["executable"] = spec.executable
        data["args"] = list(spec.args)
    elif isinstance(spec, ShellSpec):
        data["command"] = spec.command
        if spec.shell is not None:
            data["shell"] = spec.shell
        if spec.error_action is not None:
            data["error_action"] = spec.error_action
    else:
        data["instructions"] = spec.instructions
        data["resume_session"] = spec.resume_session
        if spec.instructions_file is not None:
            data["instructions_file"] = spec.instructions_file
        if spec.model is not None:
            data["model"] = spec.model
        if spec.model_tier is not None:
            data["model_tier"] = spec.model_tier
        if spec.context_files:
            data["context_files"] = list(spec.context_files)
        if spec.max_turns is not None:
            data["max_turns"] = spec.max_turns
        if spec.context is not None:
            data["context"] = spec.context
        if spec.allowed_folders:
            data["allowed_folders"] = list(spec.allowed_folders)
        if spec.allowed_urls:
            data["allowed_urls"] = list(spec.allowed_urls)
    if spec.env:
        data["env"] = dict(spec.env)
    if not isinstance(spec, AgentSpec):
        if spec.cwd is not None:
            data["cwd"] = spec.cwd
        if spec.timeout_ms is not None:
            data["timeout_ms"] = spec.timeout_ms
    if spec.on_failure is not None:
        data["on_failure"] = spec.on_failure.to_dict()
    return data


def is_agent_work(spec: WorkSpec | None) -> bool:
    return isinstance(spec, AgentSpec)


def default_auto_heal(work: WorkSpec | None) -> bool:
    """Process and shell work heal by default; agents already fix their own output."""
    return not is_agent_work(work)


def describe_work(spec: WorkSpec | None) -> str:
    if spec is None:
        return "No work specified"
    if isinstance(spec, ShellSpec):
        return f"Shell: {spec.command}"
    if isinstance(spec, ProcessSpec):
        return f"Process: {' '.join([spec.executable, *spec.args])}"
    return f"Agent: {spec.instructions[:200]}"


def command_line(spec: WorkSpec | None) -> str:
    if isinstance(spec, ShellSpec):
        return spec.command
    if isinstance(spec, ProcessSpec):
        return " ".join([spec.executable, *spec.args])
    return "Unknown command"


def heal_disabled(spec: WorkSpec | None) -> bool:
    return spec is not None and spec.on_failure is not None and spec.on_failure.no_auto_heal