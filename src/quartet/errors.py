from __future__ import annotations


class UnknownStageError(ValueError):
    """Raised when a caller names a stage outside the fixed pipeline."""


class TaskRegistryError(RuntimeError):
    """Raised when a task id is registered twice or reused."""


class CapabilityError(RuntimeError):
    """Raised when a stage dispatches a capability it does not declare."""


class WorkflowStateError(RuntimeError):
    """Raised when a terminal workflow context is mutated."""


class WorkspaceBusyError(RuntimeError):
    """Raised when a workspace already has a request in flight."""

    def __init__(self, workspace: str) -> None:
        super().__init__(f"Workspace is busy with another request: {workspace}")
        self.workspace = workspace
