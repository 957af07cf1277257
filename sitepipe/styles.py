"""Style stages for Sitepipe.

The primary style stage inlines local ``@import`` rules, lints the resolved
stylesheet with stylelint, adds vendor prefixes with postcss + autoprefixer
and finally reports what the linter found. Lint problems never stop the
output from being written.

The verification stage re-lints already built CSS with ``stylelint --fix``.
It fixes files in place and only reports; running it twice in a row is a
no-op the second time.

Key classes:
- ImportResolver: Recursively inlines local imports.
- StylelintLinter: Runs stylelint and parses its JSON report.
- AutoprefixerPrefixer: Runs postcss with the autoprefixer plugin.
"""

from __future__ import annotations

import json
import re
import subprocess
from pathlib import Path
from typing import Any

from .executable_utils import TaskFatalError, run_tool
from .models import Diagnostic, FileEntry, Severity
from .protocols import DiagnosticReporter, Prefixer, StyleLinter
from .stages import (
    Step,
    StepContext,
    StepKind,
    StepResult,
    TransformError,
    TransformStage,
    report_step,
)

STYLELINT = "stylelint"
POSTCSS = "postcss"

_IMPORT_RE = re.compile(
    r"""@import\s+(?:url\(\s*)?(?P<quote>["']?)(?P<target>[^"'()\s;]+)(?P=quote)\s*\)?\s*(?P<media>[^;]*);"""
)
_REMOTE_PREFIXES = ("http://", "https://", "//")
_GLOB_CHARS = set("*?[")

# stylelint exit codes
_EXIT_PROBLEMS = 2
_EXIT_INVALID_CONFIG = 78


class ImportNotFoundError(Exception):
    """Raised when an ``@import`` target cannot be located.

    Attributes:
        target: The import target as written.
        importer: File containing the import.
    """

    def __init__(self, target: str, importer: Path):
        self.target = target
        self.importer = importer
        super().__init__(f"Failed to find '{target}' imported from {importer.name}")


class ImportResolver:
    """Inlines local stylesheet imports.

    Lookup order for ``@import "x"`` relative to the importing file:
    ``x``, ``x.css``, ``_x``, ``_x.css``, ``x/index.css``. Targets with glob
    characters expand to every matching file in sorted order. A file already
    inlined into the current tree is skipped.
    """

    def __init__(self, private_prefix: str = "_"):
        self.private_prefix = private_prefix

    def resolve(self, css: str, path: Path) -> str:
        """Return css with all local imports inlined.

        Args:
            css: Stylesheet content.
            path: Absolute path of the stylesheet, used to resolve imports.

        Raises:
            ImportNotFoundError: If an import target does not exist.
        """
        return self._inline(css, path, {path.resolve()})

    def _inline(self, css: str, path: Path, seen: set[Path]) -> str:
        def repl(match: re.Match) -> str:
            target = match.group("target")
            if target.startswith(_REMOTE_PREFIXES):
                return match.group(0)
            files = self.locate(target, path.parent)
            if not files:
                raise ImportNotFoundError(target, path)
            chunks = []
            for file in files:
                key = file.resolve()
                if key in seen:
                    continue
                seen.add(key)
                chunks.append(self._inline(file.read_text(encoding="utf-8"), file, seen))
            body = "\n".join(chunks)
            media = match.group("media").strip()
            if media and body:
                body = f"@media {media} {{\n{body}\n}}"
            return body

        return _IMPORT_RE.sub(repl, css)

    def locate(self, target: str, base: Path) -> list[Path]:
        if _GLOB_CHARS.intersection(target):
            return sorted(p for p in base.glob(target) if p.is_file())
        candidate = base / target
        name = candidate.name
        options = (
            candidate,
            candidate.parent / f"{name}.css",
            candidate.parent / f"{self.private_prefix}{name}",
            candidate.parent / f"{self.private_prefix}{name}.css",
            candidate / "index.css",
        )
        for option in options:
            if option.is_file():
                return [option]
        return []


def _load_report(result: subprocess.CompletedProcess) -> list[Any]:
    # stylelint 16 writes the formatter output to stderr, older releases to stdout.
    for stream in (result.stdout, result.stderr):
        text = (stream or "").strip()
        if not text.startswith("["):
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, list):
            return payload
    return []


def parse_stylelint_report(payload: list[Any], entry: FileEntry) -> list[Diagnostic]:
    """Convert stylelint JSON output into diagnostics.

    Args:
        payload: Decoded JSON report.
        entry: File the report belongs to.

    Returns:
        Diagnostics for rule warnings and invalid option warnings.
    """
    diagnostics: list[Diagnostic] = []
    for result in payload:
        if not isinstance(result, dict):
            continue
        for warning in result.get("invalidOptionWarnings") or []:
            diagnostics.append(
                Diagnostic(
                    source_path=entry.display_path,
                    line=0,
                    column=0,
                    severity=Severity.WARNING,
                    message=str(warning.get("text", "")),
                    tool="stylelint",
                )
            )
        for warning in result.get("warnings") or []:
            severity = Severity.from_value(warning.get("severity"))
            if severity is None:
                continue
            diagnostics.append(
                Diagnostic(
                    source_path=entry.display_path,
                    line=int(warning.get("line") or 0),
                    column=int(warning.get("column") or 0),
                    severity=severity,
                    message=str(warning.get("text", "")),
                    rule=warning.get("rule"),
                    tool="stylelint",
                )
            )
    return diagnostics


class StylelintLinter:
    """Lints CSS with the stylelint CLI.

    Without ``fix`` the content is piped over stdin and returned unchanged.
    With ``fix`` stylelint rewrites the file on disk and the fixed content is
    read back.

    Attributes:
        project_root: Project root, used for node_modules and config lookup.
        fix: Whether to apply automatic fixes.
    """

    tools = (STYLELINT,)

    def __init__(self, project_root: Path, fix: bool = False):
        self.project_root = project_root
        self.fix = fix

    def lint(self, css: str, entry: FileEntry) -> tuple[str, list[Diagnostic]]:
        if self.fix:
            args = [str(entry.source_path), "--fix", "--formatter", "json"]
            result = run_tool(STYLELINT, args, self.project_root)
        else:
            args = ["--formatter", "json", "--stdin-filename", str(entry.source_path)]
            result = run_tool(STYLELINT, args, self.project_root, input_text=css)

        if result.returncode == _EXIT_INVALID_CONFIG:
            raise TaskFatalError(
                STYLELINT,
                result.stderr.strip() or "No stylelint configuration found",
            )
        payload = _load_report(result)
        if result.returncode not in (0, _EXIT_PROBLEMS) and not payload:
            raise TransformError(
                entry.display_path, f"stylelint failed: {result.stderr.strip()}"
            )
        if self.fix:
            css = entry.source_path.read_text(encoding="utf-8")
        return css, parse_stylelint_report(payload, entry)


class AutoprefixerPrefixer:
    """Adds vendor prefixes using ``postcss --use autoprefixer``.

    Attributes:
        project_root: Project root, used for node_modules lookup.
        browsers: Optional browserslist queries passed via BROWSERSLIST.
    """

    tools = (POSTCSS,)

    def __init__(self, project_root: Path, browsers: list[str] | None = None):
        self.project_root = project_root
        self.browsers = browsers

    def prefix(self, css: str, entry: FileEntry) -> str:
        env = {"BROWSERSLIST": ", ".join(self.browsers)} if self.browsers else None
        result = run_tool(
            POSTCSS,
            ["--use", "autoprefixer", "--no-map"],
            self.project_root,
            input_text=css,
            env=env,
        )
        if result.returncode != 0:
            raise TransformError(
                entry.display_path, f"postcss failed: {result.stderr.strip()}"
            )
        return result.stdout


def resolve_imports_step(resolver: ImportResolver) -> Step:
    def _resolve(content: str, context: StepContext) -> StepResult:
        try:
            return StepResult(resolver.resolve(content, context.entry.source_path))
        except ImportNotFoundError as exc:
            raise TransformError(context.entry.display_path, str(exc), exc) from exc

    return Step(StepKind.RESOLVE_IMPORTS, "import", _resolve)


def lint_step(linter: StyleLinter) -> Step:
    def _lint(content: str, context: StepContext) -> StepResult:
        fixed, diagnostics = linter.lint(content, context.entry)
        return StepResult(fixed, tuple(diagnostics))

    return Step(StepKind.LINT, "stylelint", _lint, tools=tuple(getattr(linter, "tools", ())))


def prefix_step(prefixer: Prefixer) -> Step:
    def _prefix(content: str, context: StepContext) -> StepResult:
        return StepResult(prefixer.prefix(content, context.entry))

    return Step(
        StepKind.PREFIX, "autoprefixer", _prefix, tools=tuple(getattr(prefixer, "tools", ()))
    )


def build_style_stage(
    resolver: ImportResolver,
    linter: StyleLinter,
    prefixer: Prefixer,
    reporter: DiagnosticReporter | None = None,
) -> TransformStage:
    """Assemble the style stage: ResolveImports, Lint, Prefix, Report."""
    return TransformStage(
        "styles",
        [
            resolve_imports_step(resolver),
            lint_step(linter),
            prefix_step(prefixer),
            report_step(),
        ],
        reporter=reporter,
    )


def build_verify_stage(
    linter: StyleLinter, reporter: DiagnosticReporter | None = None
) -> TransformStage:
    """Assemble the verification stage: Lint (with fixes), Report."""
    return TransformStage(
        "verify-styles",
        [lint_step(linter), report_step()],
        reporter=reporter,
    )
