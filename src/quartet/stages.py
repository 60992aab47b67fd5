from __future__ import annotations

from enum import Enum

from quartet.errors import UnknownStageError


class Stage(str, Enum):
    PLANNER = "planner"
    BUILDER = "builder"
    QA = "qa"
    PROD_READY = "prod_ready"


class WorkflowState(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    BUILDING = "building"
    VERIFYING = "verifying"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


PIPELINE: tuple[Stage, ...] = (Stage.PLANNER, Stage.BUILDER, Stage.QA, Stage.PROD_READY)

STAGE_STATES: dict[Stage, WorkflowState] = {
    Stage.PLANNER: WorkflowState.PLANNING,
    Stage.BUILDER: WorkflowState.BUILDING,
    Stage.QA: WorkflowState.VERIFYING,
    Stage.PROD_READY: WorkflowState.FINALIZING,
}

TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED})

_ALIASES = {
    "plan": Stage.PLANNER,
    "build": Stage.BUILDER,
    "verify": Stage.QA,
    "prodready": Stage.PROD_READY,
    "prod-ready": Stage.PROD_READY,
    "release": Stage.PROD_READY,
}


def parse_stage(value: str | Stage) -> Stage:
    if isinstance(value, Stage):
        return value
    normalized = str(value).strip().lower()
    try:
        return Stage(normalized)
    except ValueError:
        pass
    if normalized in _ALIASES:
        return _ALIASES[normalized]
    raise UnknownStageError(
        f"Unknown stage '{value}'. Expected one of: "
        + ", ".join(stage.value for stage in PIPELINE)
    )


def previous_stage(stage: Stage) -> Stage | None:
    index = PIPELINE.index(stage)
    if index == 0:
        return None
    return PIPELINE[index - 1]
