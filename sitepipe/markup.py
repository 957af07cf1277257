"""Markup stage for Sitepipe.

Pages are rendered with Jinja2, validated with html-validate and reformatted
with js-beautify's html-beautify. Validation always sees the rendered page, so
reported line/column positions refer to the generated HTML rather than the
template source.

Key classes:
- JinjaRenderer: Renders page sources with partials resolved from the source dir.
- HtmlValidateValidator: Runs the html-validate CLI and parses its JSON report.
- HtmlBeautifier: Runs html-beautify over the rendered markup.

Key functions:
- page_identifier: Derive the ``page`` template variable from a path.
- build_markup_stage: Assemble the Render → Validate → Beautify stage.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateSyntaxError

from .config import ValidationRules
from .executable_utils import run_tool
from .models import Diagnostic, FileEntry, Severity
from .protocols import Beautifier, DiagnosticReporter, MarkupValidator, TemplateRenderer
from .stages import (
    Step,
    StepContext,
    StepKind,
    StepResult,
    TransformError,
    TransformStage,
    format_error_message,
)

HTML_VALIDATE = "html-validate"
HTML_BEAUTIFY = "html-beautify"


def page_identifier(entry: FileEntry) -> str:
    """Return the page identifier exposed to templates as ``page``.

    The identifier is the path relative to the source root with the ``.html``
    suffix stripped, so ``source/blog/post.html`` becomes ``blog/post``.
    """
    path = entry.path
    if path.suffix == ".html":
        path = path.with_suffix("")
    return path.as_posix()


class JinjaRenderer:
    """Template renderer using Jinja2.

    Autoescaping is off because page sources are trusted HTML. The loader is
    rooted at the source directory so ``{% include "_header.html" %}`` and
    ``{% extends "_layouts/base.html" %}`` resolve to partials.

    Attributes:
        source_dir: Directory with page sources and partials.
        env: Jinja2 environment.
    """

    def __init__(self, source_dir: Path):
        self.source_dir = source_dir
        self.env = Environment(
            loader=FileSystemLoader(str(source_dir)),
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, source: str, context: dict[str, Any]) -> str:
        """Render a page source string.

        Args:
            source: Template source of the page.
            context: Variables to make available in the template.

        Returns:
            Rendered HTML.
        """
        return self.env.from_string(source).render(**context)


def parse_html_validate_report(payload: Any, entry: FileEntry) -> list[Diagnostic]:
    """Convert html-validate JSON output into diagnostics.

    Messages whose severity is neither 1 (warning) nor 2 (error) are dropped.

    Args:
        payload: Decoded JSON report (a list of per-file results).
        entry: File the report belongs to.

    Returns:
        Diagnostics in report order.
    """
    diagnostics: list[Diagnostic] = []
    for result in payload or []:
        if not isinstance(result, dict):
            continue
        for message in result.get("messages") or []:
            severity = Severity.from_value(message.get("severity"))
            if severity is None:
                continue
            diagnostics.append(
                Diagnostic(
                    source_path=entry.display_path,
                    line=int(message.get("line") or 0),
                    column=int(message.get("column") or 0),
                    severity=severity,
                    message=str(message.get("message", "")),
                    rule=message.get("ruleId"),
                    selector=message.get("selector") or None,
                    tool="HtmlValidate",
                )
            )
    return diagnostics


class HtmlValidateValidator:
    """Validates markup with the html-validate CLI.

    The rule set is written to a throwaway JSON config for every run and the
    markup is piped over stdin, so nothing is read back from disk.

    Attributes:
        project_root: Project root, used for node_modules lookup.
        rules: Rule set to validate against.
    """

    tools = (HTML_VALIDATE,)

    def __init__(self, project_root: Path, rules: ValidationRules | None = None):
        self.project_root = project_root
        self.rules = rules or ValidationRules()

    def validate(self, markup: str, entry: FileEntry) -> list[Diagnostic]:
        with tempfile.TemporaryDirectory(prefix="sitepipe-") as tmp:
            config_path = Path(tmp) / "htmlvalidate.json"
            config_path.write_text(json.dumps(self.rules.as_config()), encoding="utf-8")
            result = run_tool(
                HTML_VALIDATE,
                [
                    "--config",
                    str(config_path),
                    "--formatter",
                    "json",
                    "--stdin",
                    "--stdin-filename",
                    entry.display_path,
                ],
                self.project_root,
                input_text=markup,
            )
        # Exit status 1 only means "errors were found".
        if result.returncode not in (0, 1):
            raise TransformError(
                entry.display_path,
                f"html-validate failed: {result.stderr.strip() or result.stdout.strip()}",
            )
        output = result.stdout.strip()
        if not output:
            return []
        try:
            payload = json.loads(output)
        except json.JSONDecodeError as exc:
            raise TransformError(
                entry.display_path, f"html-validate returned invalid JSON: {exc}", exc
            ) from exc
        return parse_html_validate_report(payload, entry)


class HtmlBeautifier:
    """Reformats markup with js-beautify's html-beautify CLI."""

    tools = (HTML_BEAUTIFY,)

    def __init__(self, project_root: Path, indent_size: int = 2):
        self.project_root = project_root
        self.indent_size = indent_size

    def beautify(self, markup: str, entry: FileEntry) -> str:
        result = run_tool(
            HTML_BEAUTIFY,
            ["--indent-size", str(self.indent_size), "--end-with-newline", "-"],
            self.project_root,
            input_text=markup,
        )
        if result.returncode != 0:
            raise TransformError(
                entry.display_path, f"html-beautify failed: {result.stderr.strip()}"
            )
        return result.stdout


def render_step(renderer: TemplateRenderer, is_dev: bool) -> Step:
    """Build the RENDER step.

    Template context: ``page`` (see page_identifier) and ``is_dev``.
    """

    def _render(content: str, context: StepContext) -> StepResult:
        entry = context.entry
        variables = {"page": page_identifier(entry), "is_dev": is_dev}
        try:
            return StepResult(renderer.render(content, variables))
        except TemplateSyntaxError as exc:
            raise TransformError(
                entry.display_path,
                f"Template syntax error on line {exc.lineno}: {exc.message}",
                exc,
            ) from exc
        except TemplateError as exc:
            raise TransformError(entry.display_path, format_error_message(exc), exc) from exc

    return Step(StepKind.RENDER, "jinja2", _render, tools=_tools_of(renderer))


def validate_step(validator: MarkupValidator) -> Step:
    def _validate(content: str, context: StepContext) -> StepResult:
        return StepResult(content, tuple(validator.validate(content, context.entry)))

    return Step(StepKind.VALIDATE, "html-validate", _validate, tools=_tools_of(validator))


def beautify_step(beautifier: Beautifier) -> Step:
    def _beautify(content: str, context: StepContext) -> StepResult:
        return StepResult(beautifier.beautify(content, context.entry))

    return Step(StepKind.BEAUTIFY, "html-beautify", _beautify, tools=_tools_of(beautifier))


def build_markup_stage(
    renderer: TemplateRenderer,
    validator: MarkupValidator,
    beautifier: Beautifier,
    is_dev: bool = False,
    reporter: DiagnosticReporter | None = None,
) -> TransformStage:
    """Assemble the markup stage: Render, then Validate, then Beautify.

    Args:
        renderer: Template renderer.
        validator: HTML validator run over the rendered page.
        beautifier: Formatter applied to the rendered page.
        is_dev: Development flag passed to templates.
        reporter: Optional reporter (the orchestrator reports for this stage).

    Returns:
        Configured TransformStage.
    """
    return TransformStage(
        "markup",
        [
            render_step(renderer, is_dev),
            validate_step(validator),
            beautify_step(beautifier),
        ],
        reporter=reporter,
    )


def _tools_of(collaborator: object) -> tuple[str, ...]:
    return tuple(getattr(collaborator, "tools", ()))
