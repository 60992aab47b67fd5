from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from quartet.errors import TaskRegistryError


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


@dataclass(slots=True)
class TaskRecord:
    task_id: str
    instruction: str
    workspace: str
    session_id: str = ""
    stage: str = ""
    status: TaskStatus = TaskStatus.PENDING
    process: asyncio.subprocess.Process | None = None
    lines: list[str] = field(default_factory=list)
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)
    exit_code: int | None = None
    modified_files: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    cancel_requested: bool = False
    _updated: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def notify(self) -> None:
        # Waiters hold the previous event; swapping keeps later waits blocking.
        updated = self._updated
        self._updated = asyncio.Event()
        updated.set()


@dataclass(slots=True, frozen=True)
class TaskStatusView:
    status: TaskStatus
    started_at: str | None
    completed_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class TaskRegistry:
    """In-flight task map owned by a single runner.

    Active records are observable as running. Retired records stay readable for
    ``retention_seconds`` so late readers can drain their output, then are
    dropped. Issued ids are kept for the registry's lifetime so an id is never
    reused, even after its record expired; one short string per task is the
    memory cost of that guarantee. All mutation happens on the owning event loop.
    """

    def __init__(self, retention_seconds: float = 300.0) -> None:
        self.retention_seconds = retention_seconds
        self._active: dict[str, TaskRecord] = {}
        self._retired: dict[str, tuple[TaskRecord, float]] = {}
        self._issued: set[str] = set()

    def _prune(self) -> None:
        now = time.monotonic()
        expired = [task_id for task_id, (_, expiry) in self._retired.items() if expiry <= now]
        for task_id in expired:
            del self._retired[task_id]

    def _lookup(self, task_id: str) -> TaskRecord | None:
        self._prune()
        record = self._active.get(task_id)
        if record is not None:
            return record
        retired = self._retired.get(task_id)
        return retired[0] if retired else None

    def register(self, record: TaskRecord) -> TaskRecord:
        if record.task_id in self._issued:
            raise TaskRegistryError(f"Task id already used: {record.task_id}")
        self._issued.add(record.task_id)
        self._active[record.task_id] = record
        return record

    def get_active(self, task_id: str) -> TaskRecord | None:
        return self._active.get(task_id)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    def mark_running(self, task_id: str, process: asyncio.subprocess.Process) -> None:
        record = self._require_active(task_id)
        if record.process is not None:
            raise TaskRegistryError(f"Task already holds a process: {task_id}")
        record.process = process
        record.status = TaskStatus.RUNNING
        record.started_at = _utcnow_iso()
        record.notify()

    def append(self, task_id: str, line: str, *, channel: str = "stdout") -> None:
        record = self._require_active(task_id)
        record.lines.append(line)
        if channel == "stderr":
            record.stderr_lines.append(line)
        else:
            record.stdout_lines.append(line)
        record.notify()

    def retire(self, task_id: str, status: TaskStatus) -> TaskRecord:
        if status not in TERMINAL_TASK_STATUSES:
            raise TaskRegistryError(f"Cannot retire task with non-terminal status: {status}")
        record = self._active.pop(task_id, None)
        if record is None:
            raise TaskRegistryError(f"Task is not active: {task_id}")
        if record.status is not TaskStatus.CANCELLED:
            record.status = status
        record.process = None
        record.completed_at = _utcnow_iso()
        self._retired[task_id] = (record, time.monotonic() + self.retention_seconds)
        record.notify()
        return record

    def _require_active(self, task_id: str) -> TaskRecord:
        record = self._active.get(task_id)
        if record is None:
            raise TaskRegistryError(f"Task is not active: {task_id}")
        return record

    def get_status(self, task_id: str) -> TaskStatusView | None:
        record = self._lookup(task_id)
        if record is None:
            return None
        return TaskStatusView(
            status=record.status,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )

    def get_output_snapshot(self, task_id: str) -> list[str]:
        record = self._lookup(task_id)
        if record is None:
            return []
        return list(record.lines)

    async def stream(self, task_id: str, offset: int = 0) -> AsyncIterator[str]:
        record = self._active.get(task_id)
        if record is None:
            return
        position = max(0, offset)
        while True:
            updated = record._updated
            while position < len(record.lines):
                yield record.lines[position]
                position += 1
            if record.task_id not in self._active:
                return
            await updated.wait()
