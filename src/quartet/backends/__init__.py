from quartet.backends.base import (
    CodeTool,
    ToolCancelledError,
    ToolExecutionError,
    ToolSpawnError,
    ToolTimeoutError,
)
from quartet.backends.claude import ClaudeCodeTool
from quartet.backends.codex import CodexTool
from quartet.backends.command import CommandTool
from quartet.config import ToolConfig


def build_tool(config: ToolConfig) -> CodeTool:
    if config.name == "command":
        return CommandTool(config.command, extra_args=config.extra_args)
    if config.name == "codex":
        return CodexTool(
            config.binary or "codex",
            model=config.model or None,
            extra_args=config.extra_args,
        )
    if config.name == "claude":
        return ClaudeCodeTool(
            config.binary or "claude",
            model=config.model or None,
            extra_args=config.extra_args,
        )
    raise ValueError(f"Unsupported tool configured: {config.name}")


__all__ = [
    "ClaudeCodeTool",
    "CodeTool",
    "CodexTool",
    "CommandTool",
    "ToolCancelledError",
    "ToolExecutionError",
    "ToolSpawnError",
    "ToolTimeoutError",
    "build_tool",
]
