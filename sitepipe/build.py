"""Build orchestration for Sitepipe.

The orchestrator runs a BuildTask's stage over every file in the task's file
set, writes the outputs and collects diagnostics. Files are independent, so
each one runs in a worker thread and the results are gathered.

Failure semantics:
- Diagnostics never stop a build.
- A TransformError is fatal for that file only: it is reported, the file's
  output is skipped, and the remaining files continue. Undecodable sources
  and failed writes are treated the same way.
- A TaskFatalError (missing tool or tool configuration) aborts the run.

Key functions:
- build_all: Full build (markup, styles, images in parallel) followed by the
  stylesheet verification pass.
- verify: Run only the verification pass.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from pathlib import Path

from .executable_utils import ToolMissingError, find_executable
from .models import BuildResult, BuildTask, FileEntry, FileOutcome
from .protocols import DiagnosticReporter
from .registry import IMAGE_TASK, MARKUP_TASK, STYLE_TASK, VERIFY_TASK, PipelineRegistry
from .source_tree import PRIVATE_PREFIX, SourceTree
from .stages import TransformError


class BuildOrchestrator:
    """Runs build tasks and writes their outputs.

    Attributes:
        project_root: Root directory of the project, used for tool lookup.
        reporter: Receives diagnostics and per-file failures.
        private_prefix: Prefix marking partials, never built directly.
    """

    def __init__(
        self,
        project_root: Path,
        reporter: DiagnosticReporter,
        private_prefix: str = PRIVATE_PREFIX,
    ):
        self.project_root = project_root
        self.reporter = reporter
        self.private_prefix = private_prefix

    def files(self, task: BuildTask) -> list[FileEntry]:
        """Enumerate the task's current file set."""
        tree = SourceTree(task.root, self.private_prefix)
        return list(tree.list(task.include, task.exclude, task.category))

    def preflight(self, tasks: Iterable[BuildTask]) -> None:
        """Check that every tool the tasks need is installed.

        Only tasks with files are checked, and only for steps that apply to
        at least one of those files.

        Raises:
            ToolMissingError: For the first missing executable.
        """
        for task in tasks:
            entries = self.files(task)
            if not entries:
                continue
            for tool in sorted(task.stage.required_tools(entries)):
                if not find_executable(tool, self.project_root):
                    raise ToolMissingError(tool, self.project_root)

    async def build(self, task: BuildTask) -> BuildResult:
        """Run a task over its whole file set.

        Args:
            task: Task to run.

        Returns:
            BuildResult with one outcome per file.
        """
        entries = await asyncio.to_thread(self.files, task)
        outcomes = await asyncio.gather(
            *(asyncio.to_thread(self._build_file, task, entry) for entry in entries)
        )
        return BuildResult(task=task.name, outcomes=list(outcomes))

    async def build_many(self, tasks: Sequence[BuildTask]) -> list[BuildResult]:
        """Run independent tasks concurrently."""
        return list(await asyncio.gather(*(self.build(task) for task in tasks)))

    def run(self, task: BuildTask) -> BuildResult:
        """Synchronous wrapper around build()."""
        return asyncio.run(self.build(task))

    def _build_file(self, task: BuildTask, entry: FileEntry) -> FileOutcome:
        try:
            output = task.stage.run(entry)
        except TransformError as exc:
            self.reporter.failure(entry, exc)
            return FileOutcome(path=entry.display_path, error=exc.message)

        if not output.reported:
            self.reporter.report(entry, output.diagnostics)

        target = task.output_path(entry)
        if target is not None:
            try:
                _write_output(target, output.content)
            except OSError as exc:
                error = TransformError(entry.display_path, f"Cannot write {target}: {exc}", exc)
                self.reporter.failure(entry, error)
                return FileOutcome(
                    path=entry.display_path,
                    diagnostics=output.diagnostics,
                    error=error.message,
                )
        return FileOutcome(
            path=entry.display_path,
            output_path=target,
            diagnostics=output.diagnostics,
        )


def _write_output(target: Path, content: str | bytes) -> None:
    """Write stage output, creating parent directories as needed."""
    target.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        target.write_bytes(content)
    else:
        with open(target, "w", encoding="utf-8") as f:
            f.write(content)


async def build_all(
    orchestrator: BuildOrchestrator, registry: PipelineRegistry
) -> list[BuildResult]:
    """Run the full build: primary tasks in parallel, then verification.

    Raises:
        TaskFatalError: If a required tool is missing for any task with files.
    """
    primary = [registry.task(name) for name in (MARKUP_TASK, STYLE_TASK, IMAGE_TASK)]
    verify_task = registry.task(VERIFY_TASK)
    # The verification pass lints build output, which may not exist yet.
    await asyncio.to_thread(orchestrator.preflight, primary)
    results = await orchestrator.build_many(primary)
    await asyncio.to_thread(orchestrator.preflight, [verify_task])
    results.append(await orchestrator.build(verify_task))
    return results


async def verify(
    orchestrator: BuildOrchestrator, registry: PipelineRegistry
) -> BuildResult:
    """Run only the stylesheet verification pass."""
    task = registry.task(VERIFY_TASK)
    await asyncio.to_thread(orchestrator.preflight, [task])
    return await orchestrator.build(task)
