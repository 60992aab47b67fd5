from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from quartet.capabilities import (
    Capability,
    ListFiles,
    ReadFile,
    ReadRequirements,
    RunTool,
    WriteRequirements,
)
from quartet.config import QuartetConfig
from quartet.context import WorkflowContext
from quartet.errors import CapabilityError
from quartet.events import EventSink, EventType, NullSink, WorkflowEvent
from quartet.runtime.changes import iter_workspace_files
from quartet.runtime.runner import OutputCallback, ProcessRunner, StageResult
from quartet.specialists import get_agent
from quartet.stages import PIPELINE, Stage, WorkflowState, parse_stage
from quartet.state import StateStore, StateStoreError

TaskIdFactory = Callable[[str, Stage], str]


@dataclass(slots=True)
class WorkflowOutcome:
    session_id: str
    status: WorkflowState
    stage_outputs: dict[str, str] = field(default_factory=dict)
    requirements: str | None = None
    failed_stage: str | None = None
    failure_reason: str | None = None
    results: list[StageResult] = field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is WorkflowState.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "stage_outputs": dict(self.stage_outputs),
            "requirements": self.requirements,
            "failed_stage": self.failed_stage,
            "failure_reason": self.failure_reason,
            "tasks": [
                {
                    "task_id": result.task_id,
                    "stage": result.stage,
                    "success": result.success,
                    "failure_kind": result.failure_kind,
                    "modified_files": list(result.modified_files),
                }
                for result in self.results
            ],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def _task_status(result: StageResult) -> str:
    if result.success:
        return "completed"
    if result.failure_kind == "cancelled":
        return "cancelled"
    return "failed"


class WorkflowEngine:
    """Drives the fixed Planner -> Builder -> QA -> ProdReady pipeline."""

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        store: StateStore | None = None,
        sink: EventSink | None = None,
        config: QuartetConfig | None = None,
        task_id_factory: TaskIdFactory | None = None,
    ) -> None:
        self.runner = runner
        self.store = store
        self.sink = sink or NullSink()
        self.config = config or QuartetConfig.default()
        self.task_id_factory = task_id_factory
        self.dropped_events = 0

    def _new_task_id(self, session_id: str, stage: Stage) -> str:
        if self.task_id_factory is not None:
            return self.task_id_factory(session_id, stage)
        return f"{session_id}-{stage.value}-{uuid4().hex[:8]}"

    def _emit(self, event_type: EventType, payload: dict[str, Any]) -> None:
        # A failing sink must not change the outcome of a workflow or chat.
        try:
            self.sink.emit(WorkflowEvent(type=event_type, payload=payload))
        except Exception:
            self.dropped_events += 1

    def _output_forwarder(self, session_id: str, stage: Stage, task_id: str) -> OutputCallback:
        def _forward(line: str) -> None:
            self._emit(
                "output_line",
                {"session_id": session_id, "stage": stage.value, "task_id": task_id, "line": line},
            )

        return _forward

    def _persist_workflow(self, context: WorkflowContext) -> None:
        if self.store is not None:
            self.store.save_workflow(context.to_record())

    def _persist_task(self, record: dict[str, Any]) -> None:
        if self.store is not None:
            self.store.save_task(record)

    @staticmethod
    def _pending_task_record(
        task_id: str,
        context: WorkflowContext,
        stage: Stage,
        instruction: str,
        kind: str,
    ) -> dict[str, Any]:
        return {
            "task_id": task_id,
            "session_id": context.session_id,
            "stage": stage.value,
            "kind": kind,
            "instruction": instruction,
            "workspace": context.workspace,
            "status": "pending",
        }

    @staticmethod
    def _result_task_record(result: StageResult) -> dict[str, Any]:
        return {
            "task_id": result.task_id,
            "status": _task_status(result),
            "stdout": result.output,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
            "failure_kind": result.failure_kind,
            "modified_files": list(result.modified_files),
            "started_at": result.started_at,
            "completed_at": result.completed_at,
        }

    async def dispatch(
        self,
        stage: Stage | str,
        command: Capability,
        context: WorkflowContext,
        *,
        on_output: OutputCallback | None = None,
    ) -> Any:
        stage = parse_stage(stage)
        agent = get_agent(stage)
        if not agent.allows(command.kind):
            raise CapabilityError(
                f"Stage '{stage.value}' is not allowed to use capability '{command.kind}'."
            )
        if isinstance(command, RunTool):
            return await self.runner.execute(
                command.task_id,
                command.instruction,
                context.workspace,
                command.timeout,
                session_id=context.session_id,
                stage=stage.value,
                on_output=on_output,
            )
        if isinstance(command, ReadFile):
            return await asyncio.to_thread(self._read_file, Path(context.workspace), command)
        if isinstance(command, ListFiles):
            return await asyncio.to_thread(self._list_files, Path(context.workspace), command)
        if isinstance(command, ReadRequirements):
            return context.requirements
        if isinstance(command, WriteRequirements):
            context.set_requirements(command.content)
            return command.content
        raise CapabilityError(f"Unsupported capability command: {command!r}")

    @staticmethod
    def _read_file(workspace: Path, command: ReadFile) -> str:
        root = workspace.resolve()
        target = (root / command.path).resolve()
        if not target.is_relative_to(root):
            raise CapabilityError(f"Path escapes the workspace: {command.path}")
        if not target.is_file():
            raise CapabilityError(f"Not a file inside the workspace: {command.path}")
        return target.read_text(encoding="utf-8", errors="replace")[: command.max_chars]

    def _list_files(self, workspace: Path, command: ListFiles) -> list[str]:
        files: list[str] = []
        for relative, _ in iter_workspace_files(workspace, self.config.runner.excluded_dirs):
            if len(files) >= command.limit:
                break
            files.append(relative)
        return files

    async def run(
        self,
        session_id: str,
        workspace: Path | str,
        request: str,
    ) -> WorkflowOutcome:
        context = WorkflowContext(
            session_id=session_id,
            workspace=str(workspace),
            request=request,
        )
        results: list[StageResult] = []
        stage: Stage | None = None
        try:
            self._persist_workflow(context)
            for stage in PIPELINE:
                result = await self._run_stage(stage, context)
                results.append(result)
                if not result.success:
                    context.fail(stage, result.failure_reason)
                    self._emit(
                        "error",
                        {
                            "session_id": session_id,
                            "stage": stage.value,
                            "task_id": result.task_id,
                            "failure_kind": result.failure_kind,
                            "reason": result.failure_reason,
                        },
                    )
                    break
            else:
                context.complete()
        except Exception as exc:
            reason = f"Workflow engine fault: {exc}"
            if not context.terminal:
                context.fail(stage, reason)
            self._emit(
                "error",
                {
                    "session_id": session_id,
                    "stage": stage.value if stage is not None else None,
                    "reason": reason,
                },
            )
        return self._finish(context, results)

    async def _run_stage(self, stage: Stage, context: WorkflowContext) -> StageResult:
        agent = get_agent(stage)
        task_id = self._new_task_id(context.session_id, stage)
        context.enter_stage(stage, task_id)
        self._persist_workflow(context)
        self._emit(
            "stage_started",
            {
                "session_id": context.session_id,
                "stage": stage.value,
                "status": context.state.value,
                "task_id": task_id,
            },
        )

        instruction = agent.build_prompt(context, excerpt_chars=self.config.prompts.excerpt_chars)
        self._persist_task(
            self._pending_task_record(task_id, context, stage, instruction, "pipeline")
        )
        result: StageResult = await self.dispatch(
            stage,
            RunTool(task_id=task_id, instruction=instruction),
            context,
            on_output=self._output_forwarder(context.session_id, stage, task_id),
        )

        if result.success and stage is Stage.PLANNER:
            if result.output.strip():
                result.requirements = await self.dispatch(
                    stage, WriteRequirements(result.output), context
                )
            else:
                result.success = False
                result.failure_kind = "gate"
                result.stderr = "[gate] Planner produced an empty requirements artifact."
        if result.success:
            context.record_output(stage, result.output)

        self._persist_task(self._result_task_record(result))
        self._persist_workflow(context)
        self._emit(
            "stage_completed",
            {
                "session_id": context.session_id,
                "stage": stage.value,
                "status": _task_status(result),
                "success": result.success,
                "task_id": task_id,
                "failure_kind": result.failure_kind,
                "modified_files": list(result.modified_files),
            },
        )
        return result

    def _finish(self, context: WorkflowContext, results: list[StageResult]) -> WorkflowOutcome:
        try:
            self._persist_workflow(context)
        except StateStoreError as exc:
            self._emit("error", {"session_id": context.session_id, "reason": str(exc)})
        self._emit(
            "workflow_completed",
            {
                "session_id": context.session_id,
                "status": context.state.value,
                "failed_stage": context.failed_stage,
                "stages_completed": list(context.stage_outputs),
            },
        )
        return WorkflowOutcome(
            session_id=context.session_id,
            status=context.state,
            stage_outputs=dict(context.stage_outputs),
            requirements=context.requirements,
            failed_stage=context.failed_stage,
            failure_reason=context.failure_reason,
            results=results,
            started_at=context.started_at,
            completed_at=context.completed_at,
        )

    def load_context(self, session_id: str, workspace: Path | str) -> WorkflowContext:
        stored = self.store.get_workflow(session_id) if self.store is not None else None
        if stored:
            return WorkflowContext.from_record(stored)
        return WorkflowContext(session_id=session_id, workspace=str(workspace))

    async def run_single_stage(
        self,
        session_id: str,
        workspace: Path | str,
        stage: Stage | str,
        message: str,
        context: WorkflowContext | None = None,
    ) -> StageResult:
        stage = parse_stage(stage)
        agent = get_agent(stage)
        source = context if context is not None else self.load_context(session_id, workspace)
        # Chat runs on a detached copy so the pipeline context is never advanced.
        chat_context = WorkflowContext(
            session_id=session_id,
            workspace=str(workspace),
            request=source.request,
            stage_outputs=dict(source.stage_outputs),
        )
        chat_context.requirements = await self.dispatch(stage, ReadRequirements(), source)
        files = await self.dispatch(
            stage, ListFiles(limit=self.config.prompts.file_listing_limit), chat_context
        )
        instruction = agent.build_chat_prompt(
            message,
            chat_context,
            files=files,
            excerpt_chars=self.config.prompts.excerpt_chars,
            file_limit=self.config.prompts.file_listing_limit,
        )
        task_id = f"{session_id}-{stage.value}-chat-{uuid4().hex[:8]}"
        self._persist_chat_task(
            self._pending_task_record(task_id, chat_context, stage, instruction, "chat")
        )
        result: StageResult = await self.dispatch(
            stage,
            RunTool(task_id=task_id, instruction=instruction),
            chat_context,
            on_output=self._output_forwarder(session_id, stage, task_id),
        )
        self._persist_chat_task(self._result_task_record(result))
        if not result.success:
            self._emit(
                "error",
                {
                    "session_id": session_id,
                    "stage": stage.value,
                    "task_id": task_id,
                    "failure_kind": result.failure_kind,
                    "reason": result.failure_reason,
                },
            )
        return result

    def _persist_chat_task(self, record: dict[str, Any]) -> None:
        try:
            self._persist_task(record)
        except StateStoreError as exc:
            self._emit(
                "error",
                {"task_id": record.get("task_id"), "reason": f"Could not persist task: {exc}"},
            )
