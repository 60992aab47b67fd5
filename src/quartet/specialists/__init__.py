from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache

from quartet.context import WorkflowContext
from quartet.specialists.base import (
    DEFAULT_EXCERPT_CHARS,
    DEFAULT_FILE_LISTING_LIMIT,
    StageAgent,
    excerpt,
)
from quartet.specialists.builder import BuilderAgent
from quartet.specialists.planner import PlannerAgent
from quartet.specialists.prod_ready import ProdReadyAgent
from quartet.specialists.qa import QAAgent
from quartet.stages import Stage, parse_stage

AGENT_TYPES: dict[Stage, type[StageAgent]] = {
    Stage.PLANNER: PlannerAgent,
    Stage.BUILDER: BuilderAgent,
    Stage.QA: QAAgent,
    Stage.PROD_READY: ProdReadyAgent,
}


@lru_cache(maxsize=None)
def get_agent(stage: Stage | str) -> StageAgent:
    return AGENT_TYPES[parse_stage(stage)]()


def build_prompt(
    stage: Stage | str,
    context: WorkflowContext,
    *,
    excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
) -> str:
    return get_agent(stage).build_prompt(context, excerpt_chars=excerpt_chars)


def build_chat_prompt(
    stage: Stage | str,
    message: str,
    context: WorkflowContext,
    *,
    files: Sequence[str] = (),
    excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
    file_limit: int = DEFAULT_FILE_LISTING_LIMIT,
) -> str:
    return get_agent(stage).build_chat_prompt(
        message,
        context,
        files=files,
        excerpt_chars=excerpt_chars,
        file_limit=file_limit,
    )


__all__ = [
    "AGENT_TYPES",
    "BuilderAgent",
    "DEFAULT_EXCERPT_CHARS",
    "PlannerAgent",
    "ProdReadyAgent",
    "QAAgent",
    "StageAgent",
    "build_chat_prompt",
    "build_prompt",
    "excerpt",
    "get_agent",
]
