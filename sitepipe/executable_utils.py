"""Executable discovery and invocation utilities for Sitepipe.

Every external tool in the pipeline (html-validate, js-beautify, stylelint,
postcss, svgo) is a Node.js CLI. This module finds those executables on the
system PATH or in the project's node_modules/.bin directory and runs them
with captured text output.

Functions:
    find_executable: Locate an executable in PATH or node_modules.
    require_executable: Like find_executable, but raises when missing.
    run_tool: Run a located tool and return the completed process.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path


class TaskFatalError(Exception):
    """Error that makes a whole task category unbuildable.

    Attributes:
        tool: Name of the tool involved.
        message: Human-readable error message.
    """

    def __init__(self, tool: str, message: str):
        self.tool = tool
        self.message = message
        super().__init__(f"{tool}: {message}")


class ToolMissingError(TaskFatalError):
    """Raised when a required executable cannot be found."""

    def __init__(self, tool: str, project_root: Path | None = None):
        where = "PATH"
        if project_root is not None:
            where += f" or {project_root / 'node_modules' / '.bin'}"
        super().__init__(
            tool,
            f"executable not found in {where}. "
            "Install it with `npm install -D <package>` in the project.",
        )


def find_executable(name: str, project_root: Path | None = None) -> str | None:
    """Locate a node CLI used by the pipeline.

    A global install on PATH wins; otherwise the project's
    ``node_modules/.bin`` is tried, which is where ``npm install -D`` puts
    html-validate, stylelint and friends.

    Args:
        name: Executable name, e.g. ``html-validate``.
        project_root: Project whose node_modules should be searched.

    Returns:
        The executable's path, or None when neither location has it.
    """
    on_path = shutil.which(name)
    if on_path:
        return on_path
    if project_root is None:
        return None
    candidate = project_root / "node_modules" / ".bin" / name
    return str(candidate) if candidate.is_file() else None


def require_executable(name: str, project_root: Path | None = None) -> str:
    """Return the path of an executable or raise ToolMissingError."""
    found = find_executable(name, project_root)
    if not found:
        raise ToolMissingError(name, project_root)
    return found


def run_tool(
    name: str,
    args: Sequence[str],
    project_root: Path | None = None,
    input_text: str | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess:
    """Run an external tool and capture its text output.

    Non-zero exit codes are returned to the caller, since several linters use
    them to signal "problems found" rather than failure.

    Args:
        name: Executable name, resolved with require_executable.
        args: Arguments following the executable.
        project_root: Project root, used for node_modules lookup and as cwd.
        input_text: Optional text piped to the tool's stdin.
        env: Extra environment variables layered over os.environ.

    Returns:
        The completed process with text stdout/stderr.
    """
    executable = require_executable(name, project_root)
    cmd = [executable, *args]
    run_env = None
    if env:
        run_env = {**os.environ, **env}
    return subprocess.run(
        cmd,
        input=input_text,
        capture_output=True,
        text=True,
        cwd=str(project_root) if project_root is not None else None,
        env=run_env,
    )
