from __future__ import annotations

from quartet.specialists.base import StageAgent
from quartet.stages import Stage


class BuilderAgent(StageAgent):
    stage = Stage.BUILDER
    title = "Builder"
    mission = "You implement the requirements specification in the current directory."
    prompt_file = "builder.md"
    fallback_template = """
# Role: Builder

$mission

## Requirements

$requirements
""".strip()
