"""Pipeline registry for Sitepipe.

The registry maps task names to BuildTasks: which stage runs over which file
set and where its output goes. New categories can be added by registering
more tasks; nothing else in the pipeline needs to change.

Key functions:
- create_default_registry: Wire the markup, style, image and verification tasks.
- default_bindings: Watch bindings re-running those tasks on change.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from .config import SiteConfig
from .images import build_image_stage, default_optimizers
from .markup import HtmlBeautifier, HtmlValidateValidator, JinjaRenderer, build_markup_stage
from .models import BuildTask, Category, WatchBinding
from .protocols import (
    Beautifier,
    DiagnosticReporter,
    ImageOptimizer,
    MarkupValidator,
    Prefixer,
    StyleLinter,
    TemplateRenderer,
)
from .styles import (
    AutoprefixerPrefixer,
    ImportResolver,
    StylelintLinter,
    build_style_stage,
    build_verify_stage,
)

MARKUP_TASK = "markup"
STYLE_TASK = "styles"
IMAGE_TASK = "images"
VERIFY_TASK = "verify-styles"

MARKUP_GLOB = "**/*.html"
STYLE_GLOB = "**/*.css"
IMAGE_GLOB = "**/*.{svg,png,jpg,jpeg}"


class PipelineRegistry:
    """Registry of build tasks, keyed by name, in registration order."""

    def __init__(self):
        self._tasks: dict[str, BuildTask] = {}

    def register(self, task: BuildTask) -> BuildTask:
        """Register a task.

        Raises:
            ValueError: If a task with the same name is already registered.
        """
        if task.name in self._tasks:
            raise ValueError(f"Task already registered: {task.name}")
        self._tasks[task.name] = task
        return task

    def task(self, name: str) -> BuildTask:
        return self._tasks[name]

    def tasks(self) -> list[BuildTask]:
        return list(self._tasks.values())


def verify_excludes(config: SiteConfig) -> tuple[str, ...]:
    """Exclusions for the verification pass: sources, dependencies, dot-dirs."""
    excludes = ["node_modules/**", ".*/**"]
    try:
        rel = config.source_dir.relative_to(config.output_dir)
    except ValueError:
        rel = None
    if rel is not None and rel.parts:
        excludes.insert(0, f"{rel.as_posix()}/**")
    return tuple(excludes)


def create_default_registry(
    config: SiteConfig,
    reporter: DiagnosticReporter | None = None,
    *,
    renderer: TemplateRenderer | None = None,
    validator: MarkupValidator | None = None,
    beautifier: Beautifier | None = None,
    linter: StyleLinter | None = None,
    fixer: StyleLinter | None = None,
    prefixer: Prefixer | None = None,
    optimizers: Sequence[tuple[str, ImageOptimizer]] | None = None,
) -> PipelineRegistry:
    """Create a registry with the default tasks.

    Collaborators default to the CLI-backed implementations; any of them can
    be replaced.

    Args:
        config: Resolved site configuration.
        reporter: Reporter used by stages that report inline.
        renderer: Template renderer for markup.
        validator: HTML validator.
        beautifier: HTML beautifier.
        linter: Stylesheet linter for the primary build (no fixes).
        fixer: Stylesheet linter for the verification pass (with fixes).
        prefixer: Vendor prefixer.
        optimizers: (name, optimizer) pairs for the image stage.

    Returns:
        Configured PipelineRegistry.
    """
    root: Path = config.project_root
    source = config.source_dir
    output = config.output_dir

    markup_stage = build_markup_stage(
        renderer or JinjaRenderer(source),
        validator or HtmlValidateValidator(root, config.validation),
        beautifier or HtmlBeautifier(root, indent_size=config.indent_size),
        is_dev=config.is_dev,
        reporter=reporter,
    )
    style_stage = build_style_stage(
        ImportResolver(config.private_prefix),
        linter or StylelintLinter(root),
        prefixer or AutoprefixerPrefixer(root, browsers=config.browsers),
        reporter=reporter,
    )
    verify_stage = build_verify_stage(
        fixer or StylelintLinter(root, fix=True), reporter=reporter
    )
    image_stage = build_image_stage(
        optimizers
        or default_optimizers(
            root,
            jpeg_quality=config.jpeg_quality,
            progressive=config.progressive_jpeg,
            svg_precision=config.svg_precision,
        )
    )

    registry = PipelineRegistry()
    registry.register(
        BuildTask(MARKUP_TASK, Category.MARKUP, source, MARKUP_GLOB, markup_stage, destination=output)
    )
    registry.register(
        BuildTask(STYLE_TASK, Category.STYLE, source, STYLE_GLOB, style_stage, destination=output)
    )
    registry.register(
        BuildTask(IMAGE_TASK, Category.IMAGE, source, IMAGE_GLOB, image_stage, destination=output)
    )
    registry.register(
        BuildTask(
            VERIFY_TASK,
            Category.STYLE,
            output,
            STYLE_GLOB,
            verify_stage,
            exclude=verify_excludes(config),
        )
    )
    return registry


def default_bindings(registry: PipelineRegistry) -> list[WatchBinding]:
    """Return the watch bindings for the default registry.

    Stylesheet changes re-run the build and then the verification pass.
    """
    return [
        WatchBinding("markup", MARKUP_GLOB, (registry.task(MARKUP_TASK),)),
        WatchBinding(
            "styles",
            STYLE_GLOB,
            (registry.task(STYLE_TASK), registry.task(VERIFY_TASK)),
        ),
        WatchBinding("images", IMAGE_GLOB, (registry.task(IMAGE_TASK),)),
    ]
