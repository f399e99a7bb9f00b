"""Application-level error types."""


class KilnError(Exception):
    """Base error for kiln."""


class ConfigError(KilnError):
    """Raised when config loading/validation fails."""


class GraphError(ConfigError):
    """Raised when the task graph cannot be built."""


class UnknownTaskError(GraphError):
    """Raised when a task or input reference cannot be resolved."""


class DuplicateTaskError(GraphError):
    """Raised when expansion produces the same task name twice."""


class CycleError(GraphError):
    """Raised when task dependencies form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"dependency cycle detected: {' -> '.join(cycle)}")


class ParamConflictError(GraphError):
    """Raised when two tasks propagate different values to the same dependency."""


class WorkspaceError(KilnError):
    """Raised when a workspace invariant is violated."""


class StateError(KilnError):
    """Raised when the state store cannot be read or written."""
