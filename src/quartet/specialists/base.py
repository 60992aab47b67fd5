from __future__ import annotations

from collections.abc import Sequence
from functools import lru_cache
from importlib import resources
from string import Template

from quartet.capabilities import LIST_FILES, READ_FILE, READ_REQUIREMENTS, RUN_TOOL
from quartet.context import WorkflowContext
from quartet.stages import Stage, previous_stage

DEFAULT_EXCERPT_CHARS = 4000
DEFAULT_FILE_LISTING_LIMIT = 200
NO_REQUIREMENTS = "(no requirements artifact has been produced yet)"
NO_OUTPUT = "(the previous stage produced no output)"
NO_FILES = "(workspace is empty)"

CHAT_FALLBACK = """
# Role: $title (direct chat)

$mission

This is a direct conversation outside the automatic pipeline. Answer the
message below; only change files in the current directory if it asks you to.

## Requirements

$requirements

## Workspace files

$files

## Message

$message
""".strip()


def excerpt(text: str, budget: int) -> str:
    """Keep the head of ``text`` within ``budget`` characters."""
    if budget <= 0:
        return ""
    if len(text) <= budget:
        return text
    dropped = len(text) - budget
    return f"{text[:budget].rstrip()}\n[... {dropped} characters truncated]"


@lru_cache(maxsize=None)
def load_template(prompt_file: str | None, fallback: str) -> str:
    if not prompt_file:
        return fallback.strip()
    try:
        prompt_path = resources.files("quartet.prompts").joinpath(prompt_file)
        return prompt_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return fallback.strip()


class StageAgent:
    stage: Stage
    title: str = "Agent"
    mission: str = "You are a software delivery agent."
    prompt_file: str | None = None
    fallback_template: str = "$mission"
    chat_prompt_file: str | None = "chat.md"
    capabilities: frozenset[str] = frozenset({RUN_TOOL, READ_FILE, LIST_FILES, READ_REQUIREMENTS})

    def __init__(self) -> None:
        self.template = load_template(self.prompt_file, self.fallback_template)
        self.chat_template = load_template(self.chat_prompt_file, CHAT_FALLBACK)

    def allows(self, capability: str) -> bool:
        return capability in self.capabilities

    def template_values(
        self,
        context: WorkflowContext,
        *,
        excerpt_chars: int,
    ) -> dict[str, str]:
        values = {
            "title": self.title,
            "mission": self.mission,
            "request": context.request.strip(),
            "requirements": (context.requirements or "").strip() or NO_REQUIREMENTS,
            "previous_stage": "",
            "previous_output": NO_OUTPUT,
        }
        prior = previous_stage(self.stage)
        if prior is not None:
            values["previous_stage"] = prior.value
            prior_output = context.stage_outputs.get(prior.value, "").strip()
            if prior_output:
                values["previous_output"] = excerpt(prior_output, excerpt_chars)
        return values

    def build_prompt(
        self,
        context: WorkflowContext,
        *,
        excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
    ) -> str:
        values = self.template_values(context, excerpt_chars=excerpt_chars)
        return Template(self.template).safe_substitute(values)

    def build_chat_prompt(
        self,
        message: str,
        context: WorkflowContext,
        *,
        files: Sequence[str] = (),
        excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
        file_limit: int = DEFAULT_FILE_LISTING_LIMIT,
    ) -> str:
        values = self.template_values(context, excerpt_chars=excerpt_chars)
        listed = list(files)[: max(0, file_limit)]
        rendered_files = "\n".join(f"- {path}" for path in listed) or NO_FILES
        if len(files) > len(listed):
            rendered_files += f"\n- ... {len(files) - len(listed)} more"
        values["files"] = rendered_files
        values["message"] = message.strip()
        return Template(self.chat_template).safe_substitute(values)
