from __future__ import annotations

from quartet.backends.base import CodeTool, render_json_line


class CodexTool(CodeTool):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
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
            "exec",
            "--json",
            "--full-auto",
            "--skip-git-repo-check",
        ]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.extend(self.extra_args)
        command.append(instruction)
        return command

    def render_line(self, raw: str) -> str | None:
        return render_json_line(raw)
