from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from planforge.state.model import (
    NodeExecutionState,
    NodeStatus,
    PlanInstance,
    PlanStatus,
    StateHistoryEntry,
)
from planforge.state.status import (
    TERMINAL_NODE_STATUSES,
    compute_group_state,
    compute_plan_status,
    compute_status_counts,
)
from planforge.util.errors import TransitionError
from planforge.util.time import now_iso

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"ready", "blocked", "canceled"}),
    "ready": frozenset({"scheduled", "blocked", "canceled"}),
    "scheduled": frozenset({"running", "failed", "canceled"}),
    "running": frozenset({"succeeded", "failed", "canceled"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
    "blocked": frozenset(),
    "canceled": frozenset(),
}


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_NODE_STATUSES


@dataclass(slots=True)
class NodeTransition:
    plan_id: str
    node_id: str
    from_status: str
    to_status: str
    at: str


TransitionListener = Callable[[NodeTransition], None]


class PlanStateMachine:
    """Every node status change of one plan goes through ``transition``."""

    def __init__(self, plan: PlanInstance, *, clock: Callable[[], str] = now_iso) -> None:
        self.plan = plan
        self._clock = clock
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def node_state(self, node_id: str) -> NodeExecutionState:
        state = self.plan.node_states.get(node_id)
        if state is None:
            raise TransitionError(f"unknown node: {node_id}")
        return state

    def transition(self, node_id: str, to_status: NodeStatus, *, error: str | None = None) -> None:
        state = self.node_state(node_id)
        from_status = state.status
        if not is_valid_transition(from_status, to_status):
            raise TransitionError(
                f"invalid transition for node {node_id}: {from_status} -> {to_status}"
            )

        now = self._clock()
        state.status = to_status
        if error is not None:
            state.error = error
        if to_status == "scheduled" and state.scheduled_at is None:
            state.scheduled_at = now
        if to_status == "running" and state.started_at is None:
            state.started_at = now
        if is_terminal(to_status) and state.ended_at is None:
            state.ended_at = now
        self._bump(state)

        logger.debug(
            "node transition plan=%s node=%s %s -> %s",
            self.plan.id,
            node_id,
            from_status,
            to_status,
        )
        event = NodeTransition(self.plan.id, node_id, from_status, to_status, now)
        for listener in self._listeners:
            listener(event)

        if to_status == "succeeded":
            self._promote_dependents(node_id)
        elif to_status in ("failed", "blocked", "canceled"):
            self._block_downstream(node_id, to_status)

        self.refresh_groups()
        if is_terminal(to_status):
            self._check_completion()
        self.record_plan_status()

    def _bump(self, state: NodeExecutionState) -> None:
        state.version += 1
        self.plan.state_version += 1

    def touch(self, node_id: str) -> None:
        """Record a non-status mutation of a node so pollers notice it."""
        self._bump(self.node_state(node_id))

    def _promote_dependents(self, node_id: str) -> None:
        node = self.plan.nodes.get(node_id)
        if node is None:
            return
        for dependent_id in node.dependents:
            dependent = self.plan.node_states.get(dependent_id)
            if dependent is not None and dependent.status == "pending":
                if self.are_dependencies_met(dependent_id):
                    self.transition(dependent_id, "ready")

    def _block_downstream(self, node_id: str, cause: str) -> None:
        source = self.plan.nodes.get(node_id)
        if source is None:
            return
        visited: set[str] = set()
        queue: deque[str] = deque([node_id])
        while queue:
            current = self.plan.nodes.get(queue.popleft())
            if current is None:
                continue
            for dependent_id in current.dependents:
                if dependent_id in visited:
                    continue
                visited.add(dependent_id)
                dependent = self.plan.node_states.get(dependent_id)
                if dependent is None or is_terminal(dependent.status):
                    continue
                # Nested transitions would re-run the BFS; block directly here.
                self._apply_blocked(dependent_id, f"Blocked: dependency '{source.name}' {cause}")
                queue.append(dependent_id)

    def _apply_blocked(self, node_id: str, error: str) -> None:
        state = self.node_state(node_id)
        if not is_valid_transition(state.status, "blocked"):
            raise TransitionError(
                f"invalid transition for node {node_id}: {state.status} -> blocked"
            )
        now = self._clock()
        from_status = state.status
        state.status = "blocked"
        state.error = error
        if state.ended_at is None:
            state.ended_at = now
        self._bump(state)
        event = NodeTransition(self.plan.id, node_id, from_status, "blocked", now)
        for listener in self._listeners:
            listener(event)

    def are_dependencies_met(self, node_id: str) -> bool:
        node = self.plan.nodes.get(node_id)
        if node is None:
            return False
        for dep_id in node.dependencies:
            dep = self.plan.node_states.get(dep_id)
            if dep is None or dep.status != "succeeded":
                return False
        return True

    def has_failed_dependency(self, node_id: str) -> bool:
        node = self.plan.nodes.get(node_id)
        if node is None:
            return False
        for dep_id in node.dependencies:
            dep = self.plan.node_states.get(dep_id)
            if dep is not None and dep.status in ("failed", "blocked", "canceled"):
                return True
        return False

    def get_nodes_by_status(self, status: NodeStatus) -> list[str]:
        return [
            node_id for node_id, state in self.plan.node_states.items() if state.status == status
        ]

    def get_ready_nodes(self) -> list[str]:
        return self.get_nodes_by_status("ready")

    def status_counts(self) -> dict[str, int]:
        return compute_status_counts(self.plan.node_states.values())

    def promote_ready(self) -> list[str]:
        """Move pending nodes whose dependencies all succeeded to ready."""
        promoted: list[str] = []
        for node_id, state in list(self.plan.node_states.items()):
            if state.status == "pending" and self.are_dependencies_met(node_id):
                self.transition(node_id, "ready")
                promoted.append(node_id)
        return promoted

    def reset_node_to_pending(self, node_id: str) -> NodeStatus:
        """Put a terminal node back into the schedulable pool for a retry.

        This deliberately bypasses the transition table. Downstream nodes that
        were blocked only because of this node go back to pending.
        """
        state = self.node_state(node_id)
        old_status = state.status
        new_status: NodeStatus = "ready" if self.are_dependencies_met(node_id) else "pending"
        state.status = new_status
        state.error = None
        state.failure_reason = None
        state.ended_at = None
        state.pid = None
        self._bump(state)
        logger.info(
            "node reset for retry plan=%s node=%s %s -> %s",
            self.plan.id,
            node_id,
            old_status,
            new_status,
        )
        self._unblock_downstream(node_id)
        self.plan.ended_at = None
        self.refresh_groups()
        self.record_plan_status(reason="retry")
        return new_status

    def _unblock_downstream(self, node_id: str) -> None:
        node = self.plan.nodes.get(node_id)
        if node is None:
            return
        for dependent_id in node.dependents:
            dependent = self.plan.node_states.get(dependent_id)
            if dependent is None or dependent.status != "blocked":
                continue
            if self.has_failed_dependency(dependent_id):
                continue
            dependent.status = "pending"
            dependent.error = None
            dependent.ended_at = None
            self._bump(dependent)
            self._unblock_downstream(dependent_id)

    def cancel_all(self) -> list[str]:
        canceled: list[str] = []
        for node_id in list(self.plan.node_states):
            state = self.plan.node_states[node_id]
            if not is_terminal(state.status):
                self.transition(node_id, "canceled")
                canceled.append(node_id)
        return canceled

    def get_base_commits_for_node(self, node_id: str) -> list[str]:
        """Completed commits of the dependencies: the first is the base, the rest merge in.

        Roots return an empty list and start from the plan base branch.
        """
        node = self.plan.nodes.get(node_id)
        if node is None or not node.dependencies:
            return []
        commits: list[str] = []
        for dep_id in node.dependencies:
            dep = self.plan.node_states.get(dep_id)
            if dep is not None and dep.completed_commit:
                commits.append(dep.completed_commit)
        return commits

    def compute_plan_status(self) -> PlanStatus:
        if self.plan.scaffolding:
            return "scaffolding"
        return compute_plan_status(
            self.plan.node_states.values(),
            has_started=self.plan.started_at is not None,
            is_paused=self.plan.is_paused,
        )

    def refresh_groups(self) -> None:
        for group_id, group in self.plan.groups.items():
            members = [
                self.plan.node_states[node_id]
                for node_id in group.all_node_ids
                if node_id in self.plan.node_states
            ]
            self.plan.group_states[group_id] = compute_group_state(
                members, self.plan.group_states.get(group_id)
            )

    def _check_completion(self) -> None:
        if not all(is_terminal(s.status) for s in self.plan.node_states.values()):
            return
        if self.plan.ended_at is None:
            ended = [s.ended_at for s in self.plan.node_states.values() if s.ended_at]
            self.plan.ended_at = max(ended) if ended else self._clock()
            logger.info(
                "plan completed plan=%s name=%s status=%s",
                self.plan.id,
                self.plan.name,
                self.compute_plan_status(),
            )

    def record_plan_status(self, *, reason: str | None = None) -> PlanStatus:
        """Append to ``state_history`` when the derived plan status changed."""
        status = self.compute_plan_status()
        history = self.plan.state_history
        previous = history[-1].to_status if history else None
        if previous != status:
            history.append(
                StateHistoryEntry(
                    from_status=previous or "pending",
                    to_status=status,
                    at=self._clock(),
                    reason=reason,
                )
            )
        return status
