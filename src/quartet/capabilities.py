from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

RUN_TOOL = "run_tool"
READ_FILE = "read_file"
LIST_FILES = "list_files"
READ_REQUIREMENTS = "read_requirements"
WRITE_REQUIREMENTS = "write_requirements"


@dataclass(frozen=True, slots=True)
class RunTool:
    task_id: str
    instruction: str
    timeout: float | None = None
    kind: ClassVar[str] = RUN_TOOL


@dataclass(frozen=True, slots=True)
class ReadFile:
    path: str
    max_chars: int = 20000
    kind: ClassVar[str] = READ_FILE


@dataclass(frozen=True, slots=True)
class ListFiles:
    limit: int = 200
    kind: ClassVar[str] = LIST_FILES


@dataclass(frozen=True, slots=True)
class ReadRequirements:
    kind: ClassVar[str] = READ_REQUIREMENTS


@dataclass(frozen=True, slots=True)
class WriteRequirements:
    content: str
    kind: ClassVar[str] = WRITE_REQUIREMENTS


Capability = RunTool | ReadFile | ListFiles | ReadRequirements | WriteRequirements
