import json
import shutil
import subprocess
from pathlib import Path

import pytest

from sitepipe.config import ValidationRules
from sitepipe.markup import (
    HtmlBeautifier,
    HtmlValidateValidator,
    JinjaRenderer,
    build_markup_stage,
    page_identifier,
    parse_html_validate_report,
)
from sitepipe.models import Category, Diagnostic, FileEntry, Severity
from sitepipe.stages import StepKind, TransformError


class FakeValidator:
    def __init__(self, diagnostics=()):
        self.diagnostics = list(diagnostics)
        self.seen = []

    def validate(self, markup, entry):
        self.seen.append(markup)
        return list(self.diagnostics)


class UpperBeautifier:
    def beautify(self, markup, entry):
        return markup.upper()


def make_entry(root, rel, text):
    return FileEntry(root, Path(rel), Category.MARKUP, text.encode("utf-8"))


def test_page_identifier_strips_suffix(tmp_path):
    assert page_identifier(make_entry(tmp_path, "about.html", "")) == "about"
    assert page_identifier(make_entry(tmp_path, "blog/post.html", "")) == "blog/post"


def test_renderer_resolves_partials(tmp_path):
    (tmp_path / "_header.html").write_text("<h1>{{ page }}</h1>")
    renderer = JinjaRenderer(tmp_path)
    html = renderer.render('{% include "_header.html" %}\n', {"page": "about"})
    assert html == "<h1>about</h1>\n"


def test_markup_stage_order_and_context(tmp_path):
    validator = FakeValidator()
    stage = build_markup_stage(
        JinjaRenderer(tmp_path), validator, UpperBeautifier(), is_dev=True
    )
    entry = make_entry(tmp_path, "about.html", "<p>{{ page }} {{ is_dev }}</p>")
    output = stage.run(entry)

    assert stage.kinds == (StepKind.RENDER, StepKind.VALIDATE, StepKind.BEAUTIFY)
    # validation sees rendered output, before beautification
    assert validator.seen == ["<p>about True</p>"]
    assert output.content == "<P>ABOUT TRUE</P>"
    assert output.reported is False


def test_markup_stage_keeps_validation_diagnostics(tmp_path):
    problem = Diagnostic("about.html", 3, 5, Severity.ERROR, "missing alt", tool="HtmlValidate")
    stage = build_markup_stage(JinjaRenderer(tmp_path), FakeValidator([problem]), UpperBeautifier())
    output = stage.run(make_entry(tmp_path, "about.html", "<img>"))
    assert output.diagnostics == [problem]
    assert output.content == "<IMG>"


def test_template_syntax_error_is_transform_error(tmp_path):
    stage = build_markup_stage(JinjaRenderer(tmp_path), FakeValidator(), UpperBeautifier())
    with pytest.raises(TransformError) as info:
        stage.run(make_entry(tmp_path, "broken.html", "{% if %}"))
    assert info.value.source_path == "broken.html"
    assert "Template syntax error on line 1" in info.value.message


def test_missing_partial_is_transform_error(tmp_path):
    stage = build_markup_stage(JinjaRenderer(tmp_path), FakeValidator(), UpperBeautifier())
    with pytest.raises(TransformError) as info:
        stage.run(make_entry(tmp_path, "page.html", '{% include "_nope.html" %}'))
    assert info.value.message.startswith("Template not found")


def test_parse_report_drops_unknown_severity(tmp_path):
    entry = make_entry(tmp_path, "about.html", "")
    payload = [
        {
            "filePath": "about.html",
            "messages": [
                {"ruleId": "wcag/h37", "severity": 2, "message": "missing alt", "line": 4, "column": 7, "selector": "img"},
                {"ruleId": "void-style", "severity": 1, "message": "style", "line": 1, "column": 1},
                {"ruleId": "odd", "severity": 0, "message": "ignored", "line": 1, "column": 1},
            ],
        }
    ]
    diagnostics = parse_html_validate_report(payload, entry)
    assert [d.message for d in diagnostics] == ["missing alt", "style"]
    first = diagnostics[0]
    assert first.severity is Severity.ERROR
    assert (first.line, first.column) == (4, 7)
    assert first.selector == "img"
    assert first.rule == "wcag/h37"
    assert first.tool == "HtmlValidate"
    assert diagnostics[1].selector is None


def test_validator_runs_cli_with_rules(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: f"/usr/bin/{name}")
    calls = {}
    report = [{"messages": [{"severity": 2, "message": "bad", "line": 2, "column": 3}]}]

    def fake_run(cmd, **kwargs):
        config_path = Path(cmd[cmd.index("--config") + 1])
        calls["config"] = json.loads(config_path.read_text())
        calls["cmd"] = cmd
        calls["input"] = kwargs["input"]
        return subprocess.CompletedProcess(cmd, 1, stdout=json.dumps(report), stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    validator = HtmlValidateValidator(tmp_path, ValidationRules())
    diagnostics = validator.validate("<img>", make_entry(tmp_path, "about.html", ""))

    assert calls["cmd"][0] == "/usr/bin/html-validate"
    assert "--stdin" in calls["cmd"]
    assert calls["input"] == "<img>"
    rules = calls["config"]["rules"]
    assert rules["no-trailing-whitespace"] == "off"
    assert rules["input-missing-label"] == "off"
    assert rules["require-sri"] == "off"
    assert [d.message for d in diagnostics] == ["bad"]


def test_validator_clean_output(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: name)
    monkeypatch.setattr(
        subprocess, "run", lambda cmd, **kw: subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    )
    validator = HtmlValidateValidator(tmp_path)
    assert validator.validate("<p></p>", make_entry(tmp_path, "a.html", "")) == []


def test_validator_crash_is_transform_error(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: name)
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 2, stdout="", stderr="crashed"),
    )
    with pytest.raises(TransformError, match="crashed"):
        HtmlValidateValidator(tmp_path).validate("<p>", make_entry(tmp_path, "a.html", ""))


def test_beautifier_passes_indent(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: name)
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0, stdout="<p>\n    x\n</p>\n", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    out = HtmlBeautifier(tmp_path, indent_size=4).beautify("<p>x</p>", make_entry(tmp_path, "a.html", ""))
    assert seen["cmd"][:3] == ["html-beautify", "--indent-size", "4"]
    assert out.endswith("</p>\n")


def test_beautifier_failure(monkeypatch, tmp_path):
    monkeypatch.setattr(shutil, "which", lambda name: name)
    monkeypatch.setattr(
        subprocess, "run", lambda cmd, **kw: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="nope")
    )
    with pytest.raises(TransformError, match="html-beautify failed: nope"):
        HtmlBeautifier(tmp_path).beautify("<p>", make_entry(tmp_path, "a.html", ""))


def test_markup_stage_lists_required_tools(tmp_path):
    stage = build_markup_stage(
        JinjaRenderer(tmp_path), HtmlValidateValidator(tmp_path), HtmlBeautifier(tmp_path)
    )
    entry = make_entry(tmp_path, "a.html", "")
    assert stage.required_tools([entry]) == {"html-validate", "html-beautify"}
