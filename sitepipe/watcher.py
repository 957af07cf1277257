"""Watch-driven incremental rebuilds for Sitepipe.

Each WatchBinding gets its own queue and a single consumer task on the event
loop. A matching change event is queued, never dropped and never run
concurrently with another cycle of the same binding, so output writes of one
run cannot interleave with the next. Independent bindings run concurrently.

One cycle walks the state machine Idle → Building → Notifying → Idle:
the bound tasks run in order, and unless every task failed completely the
reload notifier fires.

Key classes:
- Watcher: Routes change events to bindings and owns their consumers.
- BindingRunner: Queue plus consumer for one binding.
- _ChangeHandler: watchdog handler forwarding file events to the Watcher.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path
from typing import Protocol

from watchdog.events import FileSystemEventHandler

from .executable_utils import TaskFatalError
from .models import BuildResult, BuildTask, WatchBinding
from .protocols import ReloadNotifier
from .source_tree import matches

_REBUILD_EVENTS = {"created", "modified", "moved", "deleted"}


class WatchState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    NOTIFYING = "notifying"


class TaskRunner(Protocol):
    async def build(self, task: BuildTask) -> BuildResult: ...


class BindingRunner:
    """Serializes rebuild cycles for one binding.

    Attributes:
        binding: The binding this runner serves.
        state: Current state of the binding's state machine.
        cycles: Number of completed cycles.
        notifications: Number of reload signals sent.
    """

    def __init__(self, binding: WatchBinding, orchestrator: TaskRunner, notifier: ReloadNotifier):
        self.binding = binding
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.state = WatchState.IDLE
        self.cycles = 0
        self.notifications = 0
        self.queue: asyncio.Queue[str] = asyncio.Queue()

    async def consume(self) -> None:
        while True:
            path = await self.queue.get()
            try:
                await self.run_cycle(path)
            finally:
                self.queue.task_done()

    async def run_cycle(self, path: str) -> list[BuildResult]:
        """Run every bound task in order, then notify.

        Errors are printed and the binding returns to Idle, so the watch
        session keeps running.
        """
        print(f"[{self.binding.name}] {path} changed; rebuilding...")
        self.state = WatchState.BUILDING
        results: list[BuildResult] = []
        try:
            for task in self.binding.tasks:
                results.append(await self.orchestrator.build(task))
        except TaskFatalError as exc:
            print(f"[{self.binding.name}] rebuild aborted: {exc}")
            self.state = WatchState.IDLE
            return results
        except Exception as exc:
            print(f"[{self.binding.name}] rebuild failed: {type(exc).__name__}: {exc}")
            self.state = WatchState.IDLE
            return results

        if self.binding.notify and not all(r.total_failure for r in results):
            self.state = WatchState.NOTIFYING
            self.notifier.reload()
            self.notifications += 1
        self.cycles += 1
        self.state = WatchState.IDLE
        return results


class Watcher:
    """Routes filesystem events to watch bindings.

    Attributes:
        source_dir: Directory observed for changes; binding globs are relative to it.
        runners: One BindingRunner per binding, keyed by binding name.
    """

    def __init__(
        self,
        source_dir: Path,
        bindings: list[WatchBinding],
        orchestrator: TaskRunner,
        notifier: ReloadNotifier,
    ):
        self.source_dir = source_dir
        self.bindings = list(bindings)
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.runners: dict[str, BindingRunner] = {}
        self._consumers: list[asyncio.Task] = []
        self._loop: asyncio.AbstractEventLoop | None = None

    async def start(self) -> None:
        """Create one consumer task per binding on the running loop."""
        self._loop = asyncio.get_running_loop()
        for binding in self.bindings:
            runner = BindingRunner(binding, self.orchestrator, self.notifier)
            self.runners[binding.name] = runner
            self._consumers.append(asyncio.create_task(runner.consume()))

    async def stop(self) -> None:
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await asyncio.gather(*(runner.queue.join() for runner in self.runners.values()))

    def relative(self, path: Path) -> str | None:
        try:
            return path.resolve().relative_to(self.source_dir.resolve()).as_posix()
        except ValueError:
            return None

    def match(self, rel_path: str) -> list[WatchBinding]:
        return [b for b in self.bindings if matches(b.pattern, rel_path)]

    def dispatch(self, path: Path | str) -> int:
        """Queue a change on every binding whose glob matches it.

        Must be called on the event loop thread.

        Returns:
            Number of bindings the event was queued on.
        """
        path = Path(path)
        rel = self.relative(path) if path.is_absolute() else path.as_posix()
        if rel is None:
            return 0
        queued = 0
        for binding in self.match(rel):
            runner = self.runners.get(binding.name)
            if runner is None:
                continue
            runner.queue.put_nowait(rel)
            queued += 1
        return queued

    def dispatch_threadsafe(self, path: Path | str) -> None:
        """Hand an event from an observer thread to the event loop."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self.dispatch, path)

    def schedule(self, observer) -> None:
        """Attach a change handler for the source directory to a watchdog observer."""
        if self.source_dir.exists():
            observer.schedule(_ChangeHandler(self), str(self.source_dir), recursive=True)


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: Watcher):
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event):
        if event.is_directory:
            return
        if event.event_type not in _REBUILD_EVENTS:
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = path.decode()
        if "node_modules" in Path(path).parts:
            return
        self.watcher.dispatch_threadsafe(path)
