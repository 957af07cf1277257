"""Protocol definitions for Sitepipe.

Every external capability the pipeline relies on (template rendering, HTML
validation, beautification, CSS linting and prefixing, image optimization,
live reload, console reporting) sits behind one of these interfaces. Stages
depend on the protocols, so tests and alternative tools can be swapped in
without touching the wiring.

Implementations backed by CLI tools expose a ``tools`` attribute naming the
executables they need; the orchestrator checks those before a build.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import Diagnostic, FileEntry


@runtime_checkable
class TemplateRenderer(Protocol):
    """Renders one markup source into final HTML."""

    @abstractmethod
    def render(self, source: str, context: dict[str, Any]) -> str:
        """Render template source with the given context.

        Raises:
            TransformError: If the template cannot be parsed or rendered.
        """
        ...


@runtime_checkable
class MarkupValidator(Protocol):
    """Validates rendered HTML against a rule set."""

    @abstractmethod
    def validate(self, markup: str, entry: FileEntry) -> list[Diagnostic]:
        """Return diagnostics for the markup, positioned in its coordinates."""
        ...


@runtime_checkable
class Beautifier(Protocol):
    """Reformats HTML deterministically."""

    @abstractmethod
    def beautify(self, markup: str, entry: FileEntry) -> str: ...


@runtime_checkable
class StyleLinter(Protocol):
    """Lints CSS, optionally applying automatic fixes."""

    @abstractmethod
    def lint(self, css: str, entry: FileEntry) -> tuple[str, list[Diagnostic]]:
        """Lint stylesheet content.

        Returns:
            Tuple of (possibly fixed CSS, diagnostics).
        """
        ...


@runtime_checkable
class Prefixer(Protocol):
    """Adds vendor prefixes to CSS."""

    @abstractmethod
    def prefix(self, css: str, entry: FileEntry) -> str: ...


@runtime_checkable
class ImageOptimizer(Protocol):
    """Optimizes one image type."""

    @abstractmethod
    def can_optimize(self, entry: FileEntry) -> bool: ...

    @abstractmethod
    def optimize(self, data: bytes, entry: FileEntry) -> bytes: ...


@runtime_checkable
class ReloadNotifier(Protocol):
    """Tells connected live clients to refresh."""

    @abstractmethod
    def reload(self) -> None:
        """Dispatch the reload signal without waiting for acknowledgment."""
        ...


@runtime_checkable
class DiagnosticReporter(Protocol):
    """Presents diagnostics and per-file failures to the operator."""

    @abstractmethod
    def report(self, entry: FileEntry, diagnostics: list[Diagnostic]) -> None: ...

    @abstractmethod
    def failure(self, entry: FileEntry, error: Exception) -> None: ...
