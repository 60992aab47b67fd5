from __future__ import annotations

from quartet.specialists.base import StageAgent
from quartet.stages import Stage


class QAAgent(StageAgent):
    stage = Stage.QA
    title = "QA"
    mission = "You verify the implementation against the requirements and fix defects."
    prompt_file = "qa.md"
    fallback_template = """
# Role: QA

$mission

## Requirements

$requirements
""".strip()
