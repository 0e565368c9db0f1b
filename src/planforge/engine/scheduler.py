from __future__ import annotations

from planforge.state.machine import PlanStateMachine
from planforge.state.model import PlanInstance


def running_in_plan(plan: PlanInstance) -> int:
    return sum(1 for state in plan.node_states.values() if state.status in ("running", "scheduled"))


def plan_budget(plan: PlanInstance, global_slots: int) -> int:
    return max(0, min(plan.max_parallel - running_in_plan(plan), global_slots))


def select_nodes(plan: PlanInstance, sm: PlanStateMachine, budget: int) -> list[str]:
    """Ready nodes in plan order, at most ``budget`` of them."""
    if budget <= 0:
        return []
    ready = set(sm.get_ready_nodes())
    return [node_id for node_id in plan.nodes if node_id in ready][:budget]
