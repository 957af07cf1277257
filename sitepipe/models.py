"""Data model for Sitepipe.

Plain dataclasses shared by every layer of the pipeline. Entries and
diagnostics are frozen: they are created once per build pass and only read
afterwards.

Key types:
- FileEntry: one source file with its category and contents.
- Diagnostic: a reportable lint/validation issue.
- BuildTask: which files a stage runs over and where output goes.
- WatchBinding: which tasks re-run when a glob changes.
- BuildResult: per-file outcomes of one task run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .stages import TransformStage


class Category(str, Enum):
    """File category a build task handles."""

    MARKUP = "markup"
    STYLE = "style"
    IMAGE = "image"


class Severity(IntEnum):
    """Diagnostic severity, numbered the way html-validate reports it."""

    WARNING = 1
    ERROR = 2

    @classmethod
    def from_value(cls, value: Any) -> Severity | None:
        """Convert a tool's raw severity into a Severity.

        Accepts the integers 1 and 2 and the strings "warning" and "error".
        Anything else returns None so callers can drop the message.

        Examples:
            >>> Severity.from_value(2)
            <Severity.ERROR: 2>

            >>> Severity.from_value(0) is None
            True
        """
        if isinstance(value, str):
            return {"warning": cls.WARNING, "error": cls.ERROR}.get(value.lower())
        if isinstance(value, bool):
            return None
        if isinstance(value, int) and value in (1, 2):
            return cls(value)
        return None

    @property
    def title(self) -> str:
        return self.name


@dataclass(frozen=True)
class FileEntry:
    """A source file selected for a build pass.

    Attributes:
        root: Directory the entry was enumerated from.
        path: Path relative to root.
        category: Category of the owning task.
        contents: Raw file bytes, read at enumeration time.
    """

    root: Path
    path: Path
    category: Category
    contents: bytes = b""

    @property
    def source_path(self) -> Path:
        return self.root / self.path

    @property
    def text(self) -> str:
        return self.contents.decode("utf-8")

    @property
    def display_path(self) -> str:
        return self.path.as_posix()


@dataclass(frozen=True)
class Diagnostic:
    """A lint or validation message attributed to one source file.

    Attributes:
        source_path: Relative path of the file the message belongs to.
        line: 1-based line in the transformed content.
        column: 1-based column in the transformed content.
        severity: Warning or error.
        message: Human-readable text from the tool.
        rule: Rule identifier, when the tool reports one.
        selector: CSS selector of the offending element, when known.
        tool: Name of the tool that produced the message.
    """

    source_path: str
    line: int
    column: int
    severity: Severity
    message: str
    rule: str | None = None
    selector: str | None = None
    tool: str = ""


@dataclass(frozen=True)
class BuildTask:
    """A stage bound to a file set and an output destination.

    Exclusion patterns are always evaluated before the include pattern.
    A destination of None marks a report-only pass that writes nothing.
    """

    name: str
    category: Category
    root: Path
    include: str
    stage: TransformStage
    exclude: tuple[str, ...] = ()
    destination: Path | None = None

    def output_path(self, entry: FileEntry) -> Path | None:
        if self.destination is None:
            return None
        return self.destination / entry.path


@dataclass(frozen=True)
class WatchBinding:
    """A glob whose changes re-run an ordered list of tasks."""

    name: str
    pattern: str
    tasks: tuple[BuildTask, ...]
    notify: bool = True


@dataclass
class FileOutcome:
    """Result of running a stage over one file."""

    path: str
    output_path: Path | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class BuildResult:
    """Result of running one BuildTask.

    Attributes:
        task: Name of the task.
        outcomes: One outcome per file, in enumeration order.
    """

    task: str
    outcomes: list[FileOutcome] = field(default_factory=list)

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return [d for outcome in self.outcomes for d in outcome.diagnostics]

    @property
    def written(self) -> list[Path]:
        return [o.output_path for o in self.outcomes if o.output_path is not None]

    @property
    def failed(self) -> list[FileOutcome]:
        return [o for o in self.outcomes if o.failed]

    @property
    def total_failure(self) -> bool:
        """True when the task had files and every one of them failed."""
        return bool(self.outcomes) and all(o.failed for o in self.outcomes)

    def count(self, severity: Severity) -> int:
        return sum(1 for d in self.diagnostics if d.severity == severity)
