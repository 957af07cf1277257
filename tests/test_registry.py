import shutil
import subprocess
from pathlib import Path

import click
import pytest

from sitepipe.config import SiteConfig
from sitepipe.executable_utils import ToolMissingError, find_executable, run_tool
from sitepipe.models import BuildTask, Category, Diagnostic, FileEntry, Severity
from sitepipe.registry import (
    IMAGE_TASK,
    MARKUP_TASK,
    STYLE_TASK,
    VERIFY_TASK,
    PipelineRegistry,
    create_default_registry,
    default_bindings,
    verify_excludes,
)
from sitepipe.reporting import ConsoleReporter, format_diagnostic
from sitepipe.stages import StepKind, TransformError, TransformStage


def make_config(tmp_path):
    return SiteConfig(project_root=tmp_path, source_dir=tmp_path / "source", output_dir=tmp_path)


def test_default_registry_tasks(tmp_path):
    config = make_config(tmp_path)
    registry = create_default_registry(config)
    assert [t.name for t in registry.tasks()] == [MARKUP_TASK, STYLE_TASK, IMAGE_TASK, VERIFY_TASK]

    styles = registry.task(STYLE_TASK)
    assert styles.root == config.source_dir
    assert styles.destination == config.output_dir
    assert styles.stage.kinds == (
        StepKind.RESOLVE_IMPORTS,
        StepKind.LINT,
        StepKind.PREFIX,
        StepKind.REPORT,
    )

    verify = registry.task(VERIFY_TASK)
    assert verify.root == config.output_dir
    assert verify.destination is None
    assert verify.exclude == ("source/**", "node_modules/**", ".*/**")


def test_verify_excludes_when_source_outside_output(tmp_path):
    config = SiteConfig(
        project_root=tmp_path, source_dir=tmp_path / "src", output_dir=tmp_path / "public"
    )
    assert verify_excludes(config) == ("node_modules/**", ".*/**")


def test_duplicate_registration_rejected(tmp_path):
    registry = PipelineRegistry()
    task = BuildTask("x", Category.STYLE, tmp_path, "**/*.css", TransformStage("x", []))
    registry.register(task)
    with pytest.raises(ValueError):
        registry.register(task)


def test_default_bindings(tmp_path):
    registry = create_default_registry(make_config(tmp_path))
    bindings = {b.name: b for b in default_bindings(registry)}
    assert bindings["markup"].pattern == "**/*.html"
    assert [t.name for t in bindings["styles"].tasks] == [STYLE_TASK, VERIFY_TASK]
    assert bindings["images"].pattern == "**/*.{svg,png,jpg,jpeg}"


def test_find_executable_prefers_path_then_node_modules(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: None)
    assert find_executable("stylelint", tmp_path) is None

    local = tmp_path / "node_modules" / ".bin" / "stylelint"
    local.parent.mkdir(parents=True)
    local.write_text("#!/bin/sh\n")
    assert find_executable("stylelint", tmp_path) == str(local)

    monkeypatch.setattr(shutil, "which", lambda name: "/usr/bin/stylelint")
    assert find_executable("stylelint", tmp_path) == "/usr/bin/stylelint"


def test_run_tool_missing_executable(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: None)
    with pytest.raises(ToolMissingError) as info:
        run_tool("svgo", ["--version"], tmp_path)
    assert "node_modules" in info.value.message


def test_run_tool_layers_environment(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: name)
    monkeypatch.setenv("SITEPIPE_TEST_MARKER", "kept")
    seen = {}

    def fake_run(cmd, **kwargs):
        seen.update(kwargs)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    run_tool("postcss", [], tmp_path, input_text="a{}", env={"BROWSERSLIST": "defaults"})
    assert seen["env"]["BROWSERSLIST"] == "defaults"
    assert seen["env"]["SITEPIPE_TEST_MARKER"] == "kept"
    assert seen["cwd"] == str(tmp_path)
    assert seen["input"] == "a{}"


def test_format_diagnostic():
    diagnostic = Diagnostic(
        "about.html", 12, 5, Severity.ERROR, 'missing "alt"', selector="img", tool="HtmlValidate"
    )
    text = click.unstyle(format_diagnostic(diagnostic))
    assert text == '[HtmlValidate] about.html (12:5) img:\nERROR: missing "alt"'


def test_console_reporter(capsys, tmp_path):
    reporter = ConsoleReporter()
    entry = FileEntry(tmp_path, Path("main.css"), Category.STYLE)
    reporter.report(entry, [])
    assert capsys.readouterr().out == ""

    reporter.report(entry, [Diagnostic("main.css", 1, 2, Severity.WARNING, "meh", tool="stylelint")])
    assert "WARNING: meh" in click.unstyle(capsys.readouterr().out)

    reporter.failure(entry, TransformError("main.css", "Failed to find 'x'"))
    err = click.unstyle(capsys.readouterr().err)
    assert "Build failed:" in err
    assert "File: main.css" in err
    assert "Error: Failed to find 'x'" in err
