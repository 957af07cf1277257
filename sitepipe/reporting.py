"""Console reporting for Sitepipe.

Diagnostics are printed with a colored prefix naming the tool, the file and
the position, followed by the severity and the tool's message:

    [HtmlValidate] about.html (12:5) img:
    ERROR: <img> is missing required "alt" attribute

Reporting happens from worker threads, so every batch is written under a lock
and batches never interleave.
"""

from __future__ import annotations

import threading

import click

from .models import Diagnostic, FileEntry, Severity

SEVERITY_STYLES = {
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
}


def format_diagnostic(diagnostic: Diagnostic) -> str:
    """Format one diagnostic as a two-line, styled block."""
    color = SEVERITY_STYLES[diagnostic.severity]
    tool = click.style(diagnostic.tool or "sitepipe", fg="cyan")
    prefix = f"[{tool}] {diagnostic.source_path} ({diagnostic.line}:{diagnostic.column})"
    if diagnostic.selector:
        prefix += " " + click.style(diagnostic.selector, fg="cyan")
    title = click.style(diagnostic.severity.title, fg=color, bold=True, underline=True)
    message = click.style(diagnostic.message, fg=color, bold=True)
    return f"{prefix}:\n{title}: {message}"


class ConsoleReporter:
    """Prints diagnostics and failures to the terminal.

    Attributes:
        err: Whether to write to stderr instead of stdout.
    """

    def __init__(self, err: bool = False):
        self.err = err
        self._lock = threading.Lock()

    def report(self, entry: FileEntry, diagnostics: list[Diagnostic]) -> None:
        if not diagnostics:
            return
        blocks = "\n\n".join(format_diagnostic(d) for d in diagnostics)
        with self._lock:
            click.echo(f"\n{blocks}\n", err=self.err)

    def failure(self, entry: FileEntry, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error)
        with self._lock:
            click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
            click.echo(click.style(f"  File: {entry.display_path}", fg="yellow"), err=True)
            click.echo(click.style(f"  Error: {message}", fg="white"), err=True)
