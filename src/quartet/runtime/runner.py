from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from quartet.backends.base import (
    CodeTool,
    ToolCancelledError,
    ToolExecutionError,
    ToolSpawnError,
    ToolTimeoutError,
)
from quartet.config import RunnerConfig
from quartet.runtime.changes import changed_between, modified_since, snapshot_digests
from quartet.runtime.registry import TaskRecord, TaskRegistry, TaskStatus

FailureKind = Literal["exit", "timeout", "cancelled", "spawn", "internal", "gate"]
OutputCallback = Callable[[str], None]
RunnerEventHook = Callable[[dict[str, Any]], None]

STREAM_LIMIT_BYTES = 1024 * 1024


@dataclass(slots=True)
class StageResult:
    task_id: str
    stage: str
    success: bool
    output: str = ""
    stderr: str = ""
    exit_code: int | None = None
    failure_kind: FailureKind | None = None
    requirements: str | None = None
    modified_files: list[str] = field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float = 0.0

    @property
    def failure_reason(self) -> str:
        if self.success:
            return ""
        if self.failure_kind == "exit":
            detail = self.stderr.strip().splitlines()[-1:] or [""]
            suffix = f": {detail[0]}" if detail[0] else ""
            return f"Tool exited with code {self.exit_code}{suffix}"
        lines = self.stderr.strip().splitlines()
        return lines[-1] if lines else f"Task failed ({self.failure_kind})"


class ProcessRunner:
    """Runs one CLI tool invocation per task and reduces it to a StageResult."""

    def __init__(
        self,
        tool: CodeTool,
        *,
        config: RunnerConfig | None = None,
        registry: TaskRegistry | None = None,
        event_hook: RunnerEventHook | None = None,
    ) -> None:
        self.tool = tool
        self.config = config or RunnerConfig()
        self.registry = registry or TaskRegistry(self.config.output_retention_seconds)
        self.event_hook = event_hook
        self.dropped_events = 0

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is None:
            return
        # Hook faults never reach the task result; they are only counted.
        try:
            self.event_hook(payload)
        except Exception:
            self.dropped_events += 1

    async def execute(
        self,
        task_id: str,
        instruction: str,
        workspace: Path | str,
        timeout: float | None = None,
        *,
        session_id: str = "",
        stage: str = "",
        on_output: OutputCallback | None = None,
    ) -> StageResult:
        record = self.registry.register(
            TaskRecord(
                task_id=task_id,
                instruction=instruction,
                workspace=str(workspace),
                session_id=session_id,
                stage=stage,
            )
        )
        limit = self.config.timeout_seconds if timeout is None else float(timeout)
        started = time.monotonic()
        failure_kind: FailureKind | None = None

        try:
            await self._run(record, limit, on_output)
        except ToolExecutionError as exc:
            failure_kind = exc.failure_kind  # type: ignore[assignment]
            if failure_kind != "exit":
                self.registry.append(task_id, str(exc), channel="stderr")
        except asyncio.CancelledError:
            await self._terminate(record.process)
            self.registry.retire(task_id, TaskStatus.CANCELLED)
            raise
        except Exception as exc:
            failure_kind = "internal"
            await self._terminate(record.process)
            record.stderr_lines.clear()
            self.registry.append(task_id, f"[internal] Runner fault: {exc}", channel="stderr")
            self._emit({"event": "task_internal_error", "task_id": task_id, "error": str(exc)})

        if failure_kind is None:
            final_status = TaskStatus.COMPLETED
        elif failure_kind == "cancelled":
            final_status = TaskStatus.CANCELLED
        else:
            final_status = TaskStatus.FAILED
        self.registry.retire(task_id, final_status)

        result = StageResult(
            task_id=task_id,
            stage=stage,
            success=failure_kind is None,
            output="\n".join(record.stdout_lines).strip(),
            stderr="\n".join(record.stderr_lines).strip(),
            exit_code=record.exit_code,
            failure_kind=failure_kind,
            modified_files=list(record.modified_files),
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration_seconds=time.monotonic() - started,
        )
        self._emit(
            {
                "event": "task_finished",
                "task_id": task_id,
                "stage": stage,
                "status": record.status.value,
                "exit_code": record.exit_code,
                "failure_kind": failure_kind,
                "modified_files": len(result.modified_files),
            }
        )
        return result

    async def _run(
        self,
        record: TaskRecord,
        timeout: float,
        on_output: OutputCallback | None,
    ) -> None:
        workspace = Path(record.workspace)
        if not workspace.is_dir():
            raise ToolSpawnError(
                f"[spawn] Workspace directory does not exist: {workspace}",
                tool=self.tool.name,
            )

        command = self.tool.build_command(record.instruction)
        excluded = list(self.config.excluded_dirs)
        digests_before: dict[str, str] | None = None
        if self.config.change_detection == "hash":
            digests_before = await asyncio.to_thread(snapshot_digests, workspace, excluded)
        started_ns = time.time_ns()

        self._emit(
            {
                "event": "task_spawn",
                "task_id": record.task_id,
                "tool": self.tool.name,
                "command": command[:2],
                "timeout_seconds": timeout,
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workspace),
                env=self.tool.environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as exc:
            self._emit(
                {"event": "task_spawn_failed", "task_id": record.task_id, "error": str(exc)}
            )
            raise ToolSpawnError(
                f"[spawn] Could not start {command[0]}: {exc}",
                tool=self.tool.name,
            ) from exc

        self.registry.mark_running(record.task_id, process)
        callback_errors: list[Exception] = []
        pumps = [
            asyncio.create_task(
                self._pump(record, process.stdout, "stdout", on_output, callback_errors)
            ),
            asyncio.create_task(
                self._pump(record, process.stderr, "stderr", on_output, callback_errors)
            ),
        ]

        timed_out = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except TimeoutError:
                timed_out = True
                self._emit({"event": "task_timeout", "task_id": record.task_id, "after": timeout})
                await self._terminate(process)

            _, pending = await asyncio.wait(pumps, timeout=self.config.drain_timeout_seconds)
            for pump in pending:
                pump.cancel()
            if pending:
                await asyncio.wait(pending)
        finally:
            # Pumps must not outlive the task; cancel() is a no-op on finished ones.
            for pump in pumps:
                pump.cancel()

        record.exit_code = process.returncode
        if digests_before is not None:
            digests_after = await asyncio.to_thread(snapshot_digests, workspace, excluded)
            record.modified_files = changed_between(digests_before, digests_after)
        else:
            record.modified_files = await asyncio.to_thread(
                modified_since, workspace, started_ns, excluded
            )

        if record.cancel_requested:
            raise ToolCancelledError(
                "[cancelled] Task was cancelled by an operator.",
                tool=self.tool.name,
                exit_code=process.returncode,
            )
        if timed_out:
            raise ToolTimeoutError(
                f"[timeout] Tool did not finish within {timeout:g}s and was terminated.",
                tool=self.tool.name,
                exit_code=process.returncode,
            )
        if callback_errors:
            raise callback_errors[0]
        if process.returncode != 0:
            raise ToolExecutionError(
                f"Tool exited with code {process.returncode}",
                tool=self.tool.name,
                exit_code=process.returncode,
            )

    async def _pump(
        self,
        record: TaskRecord,
        stream: asyncio.StreamReader | None,
        channel: str,
        on_output: OutputCallback | None,
        callback_errors: list[Exception],
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            text = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            if channel == "stdout":
                rendered = self.tool.render_line(text)
                if rendered is None:
                    continue
                pieces = rendered.splitlines() or [""]
            else:
                pieces = [text]
            for piece in pieces:
                self.registry.append(record.task_id, piece, channel=channel)
                if on_output is None or callback_errors:
                    continue
                try:
                    on_output(piece)
                except Exception as exc:
                    callback_errors.append(exc)

    async def _terminate(self, process: asyncio.subprocess.Process | None) -> None:
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.terminate_grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def cancel(self, task_id: str) -> bool:
        record = self.registry.get_active(task_id)
        if record is None:
            return False
        process = record.process
        if process is None or process.returncode is not None or record.cancel_requested:
            return False
        record.cancel_requested = True
        record.status = TaskStatus.CANCELLED
        record.notify()
        self._emit({"event": "task_cancel", "task_id": task_id})
        await self._terminate(process)
        return True
