from quartet.runtime.changes import modified_since, snapshot_digests
from quartet.runtime.registry import TaskRecord, TaskRegistry, TaskStatus, TaskStatusView
from quartet.runtime.runner import ProcessRunner, StageResult

__all__ = [
    "ProcessRunner",
    "StageResult",
    "TaskRecord",
    "TaskRegistry",
    "TaskStatus",
    "TaskStatusView",
    "modified_since",
    "snapshot_digests",
]
