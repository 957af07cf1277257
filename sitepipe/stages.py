"""Transform stages for Sitepipe.

A TransformStage is an explicit, ordered list of named step descriptors. Each
step receives the content emitted by the previous step and returns new content
plus any diagnostics. Diagnostics accumulate on the side and never change the
content that flows downstream.

Key classes:
- StepKind: Tag identifying what a step does (render, lint, ...).
- Step: Descriptor pairing a tag with the callable that implements it.
- TransformStage: Runs the steps over one FileEntry.
- TransformError: A single file could not be transformed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .executable_utils import TaskFatalError
from .models import Diagnostic, FileEntry
from .protocols import DiagnosticReporter


class StepKind(str, Enum):
    RENDER = "render"
    VALIDATE = "validate"
    BEAUTIFY = "beautify"
    RESOLVE_IMPORTS = "resolve-imports"
    LINT = "lint"
    PREFIX = "prefix"
    REPORT = "report"
    OPTIMIZE = "optimize"


class TransformError(Exception):
    """A file could not be transformed; fatal for that file only.

    Attributes:
        source_path: Relative path of the file that failed.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: str,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


@dataclass(frozen=True)
class StepResult:
    content: Any
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass
class StepContext:
    """Per-file state visible to every step of a stage run.

    Attributes:
        entry: File being transformed.
        diagnostics: Diagnostics collected by earlier steps.
        reporter: Reporter used by REPORT steps.
        reported: Set once a REPORT step has handled the diagnostics.
    """

    entry: FileEntry
    diagnostics: list[Diagnostic] = field(default_factory=list)
    reporter: DiagnosticReporter | None = None
    reported: bool = False


StepFunction = Callable[[Any, StepContext], StepResult]


@dataclass(frozen=True)
class Step:
    """Named step descriptor.

    Attributes:
        kind: What the step does.
        name: Tool or implementation label, e.g. "jinja2" or "stylelint".
        run: Callable implementing the step.
        tools: External executables the step needs.
        applies_to: Optional predicate; the step is skipped for entries it rejects.
    """

    kind: StepKind
    name: str
    run: StepFunction
    tools: tuple[str, ...] = ()
    applies_to: Callable[[FileEntry], bool] | None = None

    def applies(self, entry: FileEntry) -> bool:
        return self.applies_to is None or self.applies_to(entry)


@dataclass
class StageOutput:
    content: Any
    diagnostics: list[Diagnostic]
    reported: bool = False


def format_error_message(exc: Exception) -> str:
    """Format an exception into a user-friendly error message.

    Args:
        exc: The exception to format.

    Returns:
        A human-readable error message.
    """
    error_type = type(exc).__name__
    error_msg = str(exc)

    if error_type == "UndefinedError":
        return f"Undefined variable: {error_msg}"
    if error_type == "TemplateNotFound":
        return f"Template not found: {error_msg}"
    if error_type == "UnidentifiedImageError":
        return f"Unreadable image: {error_msg}"

    return f"{error_type}: {error_msg}"


def _decode(entry: FileEntry) -> str:
    try:
        return entry.text
    except UnicodeDecodeError as exc:
        raise TransformError(entry.display_path, f"Cannot decode as UTF-8: {exc}", exc) from exc

class TransformStage:
    """Ordered pipeline of steps for one file category.

    Attributes:
        name: Stage name used in messages.
        steps: Step descriptors in execution order.
        binary: Whether content flows as bytes instead of text.
        reporter: Reporter handed to REPORT steps.
    """

    def __init__(
        self,
        name: str,
        steps: Sequence[Step],
        binary: bool = False,
        reporter: DiagnosticReporter | None = None,
    ):
        self.name = name
        self.steps = tuple(steps)
        self.binary = binary
        self.reporter = reporter

    def __repr__(self) -> str:
        kinds = ", ".join(step.kind.value for step in self.steps)
        return f"TransformStage({self.name!r}, [{kinds}])"

    @property
    def kinds(self) -> tuple[StepKind, ...]:
        return tuple(step.kind for step in self.steps)

    @property
    def reports_inline(self) -> bool:
        return StepKind.REPORT in self.kinds

    def required_tools(self, entries: Iterable[FileEntry]) -> set[str]:
        """Collect executables needed by steps that apply to any entry."""
        entries = list(entries)
        tools: set[str] = set()
        for step in self.steps:
            if step.tools and any(step.applies(entry) for entry in entries):
                tools.update(step.tools)
        return tools

    def run(self, entry: FileEntry) -> StageOutput:
        """Run every applicable step over one file.

        Args:
            entry: File to transform.

        Returns:
            StageOutput with the final content and all diagnostics.

        Raises:
            TransformError: If the file cannot be decoded or a step cannot
                produce content for it.
            TaskFatalError: If a required tool or its configuration is missing.
        """
        context = StepContext(entry=entry, reporter=self.reporter)
        content: Any = entry.contents if self.binary else _decode(entry)
        for step in self.steps:
            if not step.applies(entry):
                continue
            try:
                result = step.run(content, context)
            except (TransformError, TaskFatalError):
                raise
            except Exception as exc:
                raise TransformError(
                    entry.display_path,
                    f"{step.kind.value} ({step.name}) failed: {format_error_message(exc)}",
                    exc,
                ) from exc
            content = result.content
            context.diagnostics.extend(result.diagnostics)
        return StageOutput(
            content=content,
            diagnostics=list(context.diagnostics),
            reported=context.reported,
        )


def report_step() -> Step:
    """Build a REPORT step that flushes collected diagnostics to the reporter.

    It never aborts the build, whatever the severity of the diagnostics.
    """

    def _report(content: Any, context: StepContext) -> StepResult:
        if context.diagnostics and context.reporter is not None:
            context.reporter.report(context.entry, list(context.diagnostics))
        context.reported = True
        return StepResult(content)

    return Step(StepKind.REPORT, "reporter", _report)
