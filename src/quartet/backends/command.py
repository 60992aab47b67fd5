from __future__ import annotations

from collections.abc import Sequence

from quartet.backends.base import CodeTool


class CommandTool(CodeTool):
    """Runs an arbitrary argv prefix with the instruction appended as last argument."""

    name = "command"

    def __init__(self, argv: Sequence[str], *, extra_args: list[str] | None = None) -> None:
        if not argv:
            raise ValueError("CommandTool requires a non-empty argv prefix.")
        self.argv = [str(part) for part in argv]
        self.extra_args = list(extra_args or [])

    def build_command(self, instruction: str) -> list[str]:
        return [*self.argv, *self.extra_args, instruction]
