"""Application-level error types."""


class PlanforgeError(Exception):
    """Base error for planforge."""


class PlanError(PlanforgeError):
    """Raised when a plan file or job graph is structurally invalid."""


class StoreError(PlanforgeError):
    """Raised when persisted plan data cannot be read or written."""


class PlanNotFoundError(PlanforgeError):
    """Raised when plan id is unknown."""


class RunConflictError(PlanforgeError):
    """Raised when a lock is held by another process."""


class TransitionError(PlanforgeError, AssertionError):
    """Raised when a state machine is asked for a transition its table forbids."""
