from __future__ import annotations

from quartet.capabilities import (
    LIST_FILES,
    READ_FILE,
    READ_REQUIREMENTS,
    RUN_TOOL,
    WRITE_REQUIREMENTS,
)
from quartet.specialists.base import StageAgent
from quartet.stages import Stage


class PlannerAgent(StageAgent):
    stage = Stage.PLANNER
    title = "Planner"
    mission = "You turn a free-text request into a requirements specification."
    prompt_file = "planner.md"
    fallback_template = """
# Role: Planner

$mission Do not write application code.

## Request

$request
""".strip()
    capabilities = frozenset(
        {RUN_TOOL, READ_FILE, LIST_FILES, READ_REQUIREMENTS, WRITE_REQUIREMENTS}
    )
