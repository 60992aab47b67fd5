from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

ToolName = Literal["claude", "codex", "command"]
ChangeDetectionMode = Literal["mtime", "hash"]

DEFAULT_EXCLUDED_DIRS = [
    "node_modules",
    "__pycache__",
    "venv",
    "env",
    "dist",
    "build",
    "target",
    "coverage",
    "htmlcov",
]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    workspace_root: str = "workspaces"


@dataclass(slots=True)
class ToolConfig:
    name: ToolName = "claude"
    binary: str = ""
    model: str = ""
    command: list[str] = field(default_factory=list)
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RunnerConfig:
    timeout_seconds: float = 600.0
    terminate_grace_seconds: float = 5.0
    output_retention_seconds: float = 300.0
    drain_timeout_seconds: float = 5.0
    change_detection: ChangeDetectionMode = "mtime"
    excluded_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))


@dataclass(slots=True)
class PromptsConfig:
    excerpt_chars: int = 4000
    file_listing_limit: int = 200


@dataclass(slots=True)
class StateConfig:
    directory: str = ".quartet/state"
    max_events: int = 200
    record_output_lines: bool = False


@dataclass(slots=True)
class QuartetConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    tool: ToolConfig = field(default_factory=ToolConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    prompts: PromptsConfig = field(default_factory=PromptsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> QuartetConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> QuartetConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            tool=ToolConfig(**data.get("tool", {})),
            runner=RunnerConfig(**data.get("runner", {})),
            prompts=PromptsConfig(**data.get("prompts", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "workspace_root": self.project.workspace_root,
            },
            "tool": {
                "name": self.tool.name,
                "binary": self.tool.binary,
                "model": self.tool.model,
                "command": list(self.tool.command),
                "extra_args": list(self.tool.extra_args),
            },
            "runner": {
                "timeout_seconds": self.runner.timeout_seconds,
                "terminate_grace_seconds": self.runner.terminate_grace_seconds,
                "output_retention_seconds": self.runner.output_retention_seconds,
                "drain_timeout_seconds": self.runner.drain_timeout_seconds,
                "change_detection": self.runner.change_detection,
                "excluded_dirs": list(self.runner.excluded_dirs),
            },
            "prompts": {
                "excerpt_chars": self.prompts.excerpt_chars,
                "file_listing_limit": self.prompts.file_listing_limit,
            },
            "state": {
                "directory": self.state.directory,
                "max_events": self.state.max_events,
                "record_output_lines": self.state.record_output_lines,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: QuartetConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "tool", "runner", "prompts", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> QuartetConfig:
    if not path.exists():
        return QuartetConfig.default()
    return QuartetConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: QuartetConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
