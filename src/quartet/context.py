from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from quartet.errors import WorkflowStateError
from quartet.stages import STAGE_STATES, TERMINAL_STATES, Stage, WorkflowState


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class WorkflowContext:
    session_id: str
    workspace: str
    request: str = ""
    stage_outputs: dict[str, str] = field(default_factory=dict)
    requirements: str | None = None
    state: WorkflowState = WorkflowState.PENDING
    current_stage: str | None = None
    failed_stage: str | None = None
    failure_reason: str | None = None
    task_ids: dict[str, str] = field(default_factory=dict)
    started_at: str = field(default_factory=_utcnow_iso)
    completed_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _ensure_mutable(self) -> None:
        if self.terminal:
            raise WorkflowStateError(
                f"Workflow {self.session_id} is {self.state.value}; context is frozen."
            )

    def enter_stage(self, stage: Stage, task_id: str) -> None:
        self._ensure_mutable()
        self.state = STAGE_STATES[stage]
        self.current_stage = stage.value
        self.task_ids[stage.value] = task_id

    def record_output(self, stage: Stage, output: str) -> None:
        self._ensure_mutable()
        self.stage_outputs[stage.value] = output

    def set_requirements(self, requirements: str) -> None:
        self._ensure_mutable()
        self.requirements = requirements

    def complete(self) -> None:
        self._ensure_mutable()
        self.state = WorkflowState.COMPLETED
        self.current_stage = None
        self.completed_at = _utcnow_iso()

    def fail(self, stage: Stage | None, reason: str) -> None:
        self._ensure_mutable()
        self.state = WorkflowState.FAILED
        self.failed_stage = stage.value if stage is not None else self.current_stage
        self.failure_reason = reason
        self.completed_at = _utcnow_iso()

    def to_record(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "workspace": self.workspace,
            "request": self.request,
            "status": self.state.value,
            "current_stage": self.current_stage,
            "stage_outputs": dict(self.stage_outputs),
            "requirements": self.requirements,
            "failed_stage": self.failed_stage,
            "failure_reason": self.failure_reason,
            "task_ids": dict(self.task_ids),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_record(cls, payload: dict[str, Any]) -> WorkflowContext:
        try:
            state = WorkflowState(str(payload.get("status", "pending")))
        except ValueError:
            state = WorkflowState.PENDING
        stage_outputs = payload.get("stage_outputs")
        task_ids = payload.get("task_ids")
        return cls(
            session_id=str(payload.get("session_id", "")),
            workspace=str(payload.get("workspace", "")),
            request=str(payload.get("request") or ""),
            stage_outputs=dict(stage_outputs) if isinstance(stage_outputs, dict) else {},
            requirements=payload.get("requirements"),
            state=state,
            current_stage=payload.get("current_stage"),
            failed_stage=payload.get("failed_stage"),
            failure_reason=payload.get("failure_reason"),
            task_ids=dict(task_ids) if isinstance(task_ids, dict) else {},
            started_at=str(payload.get("started_at") or _utcnow_iso()),
            completed_at=payload.get("completed_at"),
        )
