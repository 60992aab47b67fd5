from __future__ import annotations

from quartet.specialists.base import StageAgent
from quartet.stages import Stage


class ProdReadyAgent(StageAgent):
    stage = Stage.PROD_READY
    title = "ProdReady"
    mission = "You prepare the verified project for release."
    prompt_file = "prod_ready.md"
    fallback_template = """
# Role: ProdReady

$mission

## Requirements

$requirements
""".strip()
