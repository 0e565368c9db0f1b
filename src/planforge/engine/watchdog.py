"""Liveness checks for nodes whose process may have died without us noticing.

This happens after the host hibernates or the coordinator restarts while a
child process was running.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection

from planforge.exec.process import ProcessTable
from planforge.state.machine import PlanStateMachine
from planforge.state.model import NodeExecutionState
from planforge.util.time import now_iso

logger = logging.getLogger(__name__)


def crashed_error(pid: int | None) -> str:
    if pid is None:
        return "Process died unexpectedly (hibernate or crash)"
    return f"Process {pid} died unexpectedly (hibernate or crash)"


def fail_crashed(
    sm: PlanStateMachine,
    node_id: str,
    state: NodeExecutionState,
    *,
    clock: Callable[[], str] = now_iso,
) -> None:
    error = crashed_error(state.pid)
    record = state.open_attempt
    if record is not None:
        record.close("failed", clock(), error=error)
    state.pid = None
    state.failure_reason = "crashed"
    sm.transition(node_id, "failed", error=error)


def check_liveness(
    sm: PlanStateMachine,
    process_table: ProcessTable,
    *,
    supervised: Collection[str] = (),
    clock: Callable[[], str] = now_iso,
) -> list[str]:
    """Fail every running node whose recorded pid is gone; return their ids.

    Nodes in ``supervised`` still have a task awaiting their process, which
    reports the exit itself; their pid may outlive the process briefly.
    """
    crashed: list[str] = []
    for node_id, state in list(sm.plan.node_states.items()):
        if state.status != "running" or state.pid is None or node_id in supervised:
            continue
        if process_table.is_alive(state.pid):
            continue
        logger.warning(
            "process died plan=%s node=%s pid=%s", sm.plan.id, node_id, state.pid
        )
        fail_crashed(sm, node_id, state, clock=clock)
        crashed.append(node_id)
    return crashed
