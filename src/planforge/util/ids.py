"""ID generation utilities."""

from datetime import datetime
from secrets import token_hex
from uuid import uuid4


def new_plan_id(now: datetime) -> str:
    """Create plan id: YYYYMMDD_HHMMSS_<6chars>."""
    ts = now.strftime("%Y%m%d_%H%M%S")
    suffix = token_hex(3)
    return f"{ts}_{suffix}"


def new_node_id() -> str:
    """Create a stable node id; the first 8 chars name the node's worktree."""
    return uuid4().hex


def new_instance_id() -> str:
    return token_hex(6)
