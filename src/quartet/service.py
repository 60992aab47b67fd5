from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from quartet.engine import WorkflowEngine, WorkflowOutcome
from quartet.errors import WorkspaceBusyError
from quartet.stages import Stage


class Orchestrator:
    """Entry points exposed to the API layer.

    A workspace accepts one request at a time: a pipeline run or an ad-hoc
    chat arriving while another request holds the same workspace is rejected
    with ``WorkspaceBusyError``.
    """

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine
        self.runner = engine.runner
        self.registry = engine.runner.registry
        self.store = engine.store
        self._busy: set[Path] = set()
        self._background: set[asyncio.Task[WorkflowOutcome]] = set()

    @staticmethod
    def _workspace_key(workspace_path: Path | str) -> Path:
        return Path(workspace_path).resolve()

    def is_busy(self, workspace_path: Path | str) -> bool:
        return self._workspace_key(workspace_path) in self._busy

    def _claim(self, workspace_path: Path | str) -> Path:
        key = self._workspace_key(workspace_path)
        if key in self._busy:
            raise WorkspaceBusyError(str(key))
        self._busy.add(key)
        return key

    @contextmanager
    def _holding(self, key: Path) -> Iterator[None]:
        try:
            yield
        finally:
            self._busy.discard(key)

    async def start_workflow(
        self,
        session_id: str,
        workspace_path: Path | str,
        user_request: str,
    ) -> WorkflowOutcome:
        key = self._claim(workspace_path)
        with self._holding(key):
            return await self.engine.run(session_id, workspace_path, user_request)

    def launch_workflow(
        self,
        session_id: str,
        workspace_path: Path | str,
        user_request: str,
    ) -> asyncio.Task[WorkflowOutcome]:
        """Start a workflow in the background; progress arrives through the event sink."""
        key = self._claim(workspace_path)

        async def _run() -> WorkflowOutcome:
            with self._holding(key):
                return await self.engine.run(session_id, workspace_path, user_request)

        task = asyncio.create_task(_run(), name=f"workflow-{session_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def run_single_stage(
        self,
        session_id: str,
        workspace_path: Path | str,
        stage_id: Stage | str,
        message: str,
    ) -> str:
        key = self._claim(workspace_path)
        with self._holding(key):
            result = await self.engine.run_single_stage(
                session_id, workspace_path, stage_id, message
            )
        if result.success:
            return result.output
        return result.output or result.failure_reason

    async def cancel_task(self, task_id: str) -> bool:
        return await self.runner.cancel(task_id)

    def get_task_status(self, task_id: str) -> dict[str, Any] | None:
        view = self.registry.get_status(task_id)
        if view is not None:
            return view.to_dict()
        if self.store is None:
            return None
        record = self.store.get_task(task_id)
        if record is None:
            return None
        return {
            "status": record.get("status"),
            "started_at": record.get("started_at"),
            "completed_at": record.get("completed_at"),
        }

    def get_task_output(self, task_id: str) -> list[str]:
        return self.registry.get_output_snapshot(task_id)

    def stream_task_output(self, task_id: str, offset: int = 0) -> AsyncIterator[str]:
        return self.registry.stream(task_id, offset)

    def get_workflow(self, session_id: str) -> dict[str, Any] | None:
        if self.store is None:
            return None
        return self.store.get_workflow(session_id)
