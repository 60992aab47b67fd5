from __future__ import annotations

import json
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

NON_INTERACTIVE_ENV = {
    "NO_COLOR": "1",
    "FORCE_COLOR": "0",
    "CI": "1",
    "TERM": "dumb",
}


class ToolExecutionError(RuntimeError):
    """Raised when a CLI tool process execution fails."""

    failure_kind = "exit"

    def __init__(
        self,
        message: str,
        *,
        tool: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.tool = tool
        self.exit_code = exit_code


class ToolSpawnError(ToolExecutionError):
    """Raised when the CLI tool process cannot be started."""

    failure_kind = "spawn"


class ToolTimeoutError(ToolExecutionError):
    """Raised when tool execution exceeds its timeout."""

    failure_kind = "timeout"


class ToolCancelledError(ToolExecutionError):
    """Raised when tool execution was cancelled by an operator."""

    failure_kind = "cancelled"


class CodeTool(ABC):
    """Adapter describing how one external code-generation CLI is invoked.

    Adapters must produce a non-interactive, auto-approving invocation that
    takes the instruction as its single task argument.
    """

    name: str = "tool"

    @abstractmethod
    def build_command(self, instruction: str) -> list[str]:
        """Return the argv used to run one instruction."""

    def environment(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(os.environ if base is None else base)
        env.update(NON_INTERACTIVE_ENV)
        return env

    def render_line(self, raw: str) -> str | None:
        """Map one raw stdout line to display text, or None to drop it."""
        return raw


def extract_event_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    result = event.get("result")
    if isinstance(result, str):
        return result

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_event_text(message)

    item = event.get("item")
    if isinstance(item, dict):
        text = item.get("text")
        if isinstance(text, str):
            return text

    return ""


def render_json_line(raw: str) -> str | None:
    line = raw.strip()
    if not line:
        return None
    if not (line.startswith("{") and line.endswith("}")):
        return line
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return line
    if not isinstance(event, dict):
        return line
    return extract_event_text(event) or None
