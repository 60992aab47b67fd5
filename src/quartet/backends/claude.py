from __future__ import annotations

from quartet.backends.base import CodeTool, render_json_line


class ClaudeCodeTool(CodeTool):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: str | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.extra_args = list(extra_args or [])

    def build_command(self, instruction: str) -> list[str]:
        command = [
            self.binary,
            "-p",
            instruction,
            "--dangerously-skip-permissions",
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if self.model:
            command.extend(["--model", self.model])
        command.extend(self.extra_args)
        return command

    def render_line(self, raw: str) -> str | None:
        return render_json_line(raw)
