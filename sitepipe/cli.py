"""Command-line interface for Sitepipe.

This module defines the CLI commands using Click framework.
Running ``sitepipe`` without a command is the same as ``sitepipe serve``.

Commands:
- serve: Build everything, verify built styles, then watch and serve with live reload.
- build: Build everything and verify built styles once.
- test: Only re-lint built stylesheets (with fixes) and report.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config import ConfigError
from .executable_utils import TaskFatalError
from .models import BuildResult, Severity


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="sitepipe")
@click.pass_context
def cli(ctx: click.Context):
    """Sitepipe static-site asset pipeline."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@cli.command()
def serve():
    """Build, verify styles, then watch and serve with live reload."""
    project_root = Path.cwd()
    config, registry, orchestrator = _setup(project_root)
    from .build import build_all
    from .registry import default_bindings
    from .server import DevServer, LiveReloadService

    results = _run(build_all(orchestrator, registry))
    _summarize(results)

    server = DevServer(
        config.output_dir,
        config.source_dir,
        default_bindings(registry),
        orchestrator,
        http_port=config.port,
        notifier=LiveReloadService(port=config.ws_port),
    )
    server.start()


@cli.command()
def build():
    """Build everything once and verify built styles."""
    project_root = Path.cwd()
    _, registry, orchestrator = _setup(project_root)
    from .build import build_all

    results = _run(build_all(orchestrator, registry))
    _summarize(results)


@cli.command("test")
def verify_styles():
    """Re-lint built stylesheets with fixes and report."""
    project_root = Path.cwd()
    _, registry, orchestrator = _setup(project_root)
    from .build import verify

    result = _run(verify(orchestrator, registry))
    _summarize([result])


def main():
    """Entry point for the CLI application."""
    cli()


def _setup(project_root: Path):
    """Load configuration and build the registry and orchestrator."""
    from .build import BuildOrchestrator
    from .config import load_config
    from .registry import create_default_registry
    from .reporting import ConsoleReporter

    try:
        config = load_config(project_root)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from None
    reporter = ConsoleReporter()
    registry = create_default_registry(config, reporter)
    orchestrator = BuildOrchestrator(project_root, reporter, config.private_prefix)
    return config, registry, orchestrator


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a build coroutine, turning task-fatal errors into exit status 1."""
    try:
        return asyncio.run(coro)
    except TaskFatalError as exc:
        click.echo(click.style("Build aborted:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  Tool: {exc.tool}", fg="yellow"), err=True)
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
        raise SystemExit(1) from None


def _summarize(results: list[BuildResult]) -> None:
    for result in results:
        errors = result.count(Severity.ERROR)
        warnings = result.count(Severity.WARNING)
        line = (
            f"{result.task}: {len(result.outcomes)} files, "
            f"{len(result.written)} written, {len(result.failed)} failed, "
            f"{errors} errors, {warnings} warnings"
        )
        color = "red" if result.failed or errors else "green"
        click.echo(click.style(line, fg=color))
