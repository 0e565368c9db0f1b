"""Auto-heal: hand a failed prechecks, work or postchecks phase to an agent to repair."""

from __future__ import annotations

import dataclasses
from pathlib import Path

from planforge.engine.executor import PipelineResult
from planforge.state.model import HEALABLE_PHASES, JobNode, NodeExecutionState
from planforge.work.spec import AgentSpec, command_line, heal_disabled, is_agent_work


def heal_instructions(phase: str, log_path: Path | None, command: str) -> str:
    return (
        f"# Auto-Heal: Fix Failed {phase} Phase\n\n"
        "Do NOT re-execute the original task. Your only job is to fix the error.\n\n"
        "## Log File\n"
        f"Read: `{log_path}`\n\n"
        "## Command to Fix and Re-run\n"
        f"```\n{command}\n```\n\n"
        "Read the log file, find the error, fix it, then re-run the command above."
    )


def can_heal(node: JobNode, state: NodeExecutionState, result: PipelineResult) -> bool:
    """Whether a failed pipeline run may be handed to a healing agent.

    Agent work is only retried when the agent process was killed by a signal;
    any other agent failure is a judgement the agent already made. Canceled
    runs and phases healed earlier in this attempt are never healed.
    """
    phase = result.failed_phase
    if result.success or result.canceled or phase is None or phase not in HEALABLE_PHASES:
        return False
    if result.failure_reason == "user-canceled":
        return False
    if state.auto_heal_attempted.get(phase):
        return False
    spec = node.spec_for_phase(phase)
    if spec is None or heal_disabled(spec):
        return False
    if is_agent_work(spec):
        # Killed agents are retried unless healing was switched off explicitly.
        return node.auto_heal is not False and result.signal is not None
    return node.auto_heal_enabled


def build_heal_spec(node: JobNode, phase: str, log_path: Path | None, logs_dir: Path) -> AgentSpec:
    spec = node.spec_for_phase(phase)
    if isinstance(spec, AgentSpec):
        # The agent was killed, not wrong: run the same instructions again.
        folders = list(spec.allowed_folders)
        if str(logs_dir) not in folders:
            folders.append(str(logs_dir))
        return dataclasses.replace(spec, allowed_folders=folders)
    return AgentSpec(
        instructions=heal_instructions(phase, log_path, command_line(spec)),
        allowed_folders=[str(logs_dir)],
        resume_session=False,
    )


def with_phase_spec(node: JobNode, phase: str, spec: AgentSpec) -> JobNode:
    """Copy of ``node`` with only ``phase`` swapped; the stored node is untouched."""
    return dataclasses.replace(node, **{phase: spec})
