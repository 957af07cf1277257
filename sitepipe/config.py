"""Configuration loading for Sitepipe.

Settings come from an optional ``sitepipe.yaml`` at the project root layered
over DEFAULT_CONFIG, plus a single environment variable selecting development
or production mode.

Key functions:
- load_config: Build a SiteConfig for a project root.
- is_dev_mode: Interpret the SITEPIPE_ENV environment variable.
"""

from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "sitepipe.yaml"
ENV_VAR = "SITEPIPE_ENV"
_DEV_VALUES = {"development", "dev", "1", "true", "yes", "on"}

DEFAULT_CONFIG: dict[str, Any] = {
    "source_dir": "source",
    "output_dir": ".",
    "private_prefix": "_",
    "port": 3000,
    "ws_port": None,
    "html": {
        "presets": ["html-validate:recommended", "html-validate:document"],
        "allow_trailing_whitespace": True,
        "allow_missing_labels": True,
        "require_sri": False,
        "rules": {},
        "indent_size": 2,
    },
    "css": {
        "browsers": None,
    },
    "images": {
        "jpeg_quality": 75,
        "progressive": True,
        "svg_precision": 2,
    },
}


_SECTIONS = ("html", "css", "images")


class ConfigError(Exception):
    """Raised when sitepipe.yaml cannot be parsed or has the wrong shape."""


@dataclass
class ValidationRules:
    """Rule set for html-validate.

    The three toggles are kept as named options so the policy of disabling
    them is visible in configuration rather than hidden in the pipeline.

    Attributes:
        presets: Presets the configuration extends.
        allow_trailing_whitespace: Turns ``no-trailing-whitespace`` off.
        allow_missing_labels: Turns ``input-missing-label`` off.
        require_sri: Keeps ``require-sri`` on when True.
        rules: Extra rule overrides merged last.
    """

    presets: list[str] = field(
        default_factory=lambda: list(DEFAULT_CONFIG["html"]["presets"])
    )
    allow_trailing_whitespace: bool = True
    allow_missing_labels: bool = True
    require_sri: bool = False
    rules: dict[str, Any] = field(default_factory=dict)

    def as_config(self) -> dict[str, Any]:
        """Return the html-validate configuration object."""
        rules: dict[str, Any] = {}
        if self.allow_trailing_whitespace:
            rules["no-trailing-whitespace"] = "off"
        if self.allow_missing_labels:
            rules["input-missing-label"] = "off"
        if not self.require_sri:
            rules["require-sri"] = "off"
        rules.update(self.rules)
        return {"extends": list(self.presets), "rules": rules}


@dataclass
class SiteConfig:
    """Resolved project configuration.

    Attributes:
        project_root: Root directory of the project.
        source_dir: Directory holding sources.
        output_dir: Directory where built files are mirrored.
        private_prefix: Prefix marking partials.
        port: HTTP port of the dev server.
        ws_port: Websocket port for live reload.
        is_dev: Development mode flag exposed to templates.
        validation: html-validate rule set.
        indent_size: Indentation used by the HTML beautifier.
        browsers: Optional browserslist queries for autoprefixer.
        jpeg_quality: JPEG re-encoding quality.
        progressive_jpeg: Whether JPEGs are written progressive.
        svg_precision: Decimal digits kept by svgo.
    """

    project_root: Path
    source_dir: Path
    output_dir: Path
    private_prefix: str = "_"
    port: int = 3000
    ws_port: int = 3001
    is_dev: bool = False
    validation: ValidationRules = field(default_factory=ValidationRules)
    indent_size: int = 2
    browsers: list[str] | None = None
    jpeg_quality: int = 75
    progressive_jpeg: bool = True
    svg_precision: int = 2


def is_dev_mode(environ: Mapping[str, str] | None = None) -> bool:
    """Interpret SITEPIPE_ENV as a development/production switch.

    Examples:
        >>> is_dev_mode({"SITEPIPE_ENV": "development"})
        True

        >>> is_dev_mode({})
        False
    """
    environ = os.environ if environ is None else environ
    return environ.get(ENV_VAR, "").strip().lower() in _DEV_VALUES


def _merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_raw_config(project_root: Path) -> dict[str, Any]:
    """Load sitepipe.yaml merged over the defaults.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied.

    Raises:
        ConfigError: If the file is not valid YAML, not a mapping, or has a
            section that is not a mapping.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = project_root / CONFIG_FILENAME
    if not config_path.exists():
        return config
    try:
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"{config_path}: expected a mapping at the top level")
    config = _merge(config, loaded)
    for section in _SECTIONS:
        if not isinstance(config[section], dict):
            raise ConfigError(f"{config_path}: '{section}' must be a mapping")
    return config


def load_config(
    project_root: Path, environ: Mapping[str, str] | None = None
) -> SiteConfig:
    """Build the resolved SiteConfig for a project.

    Args:
        project_root: Root directory of the project.
        environ: Environment to read SITEPIPE_ENV from (defaults to os.environ).

    Returns:
        SiteConfig with absolute directories.

    Raises:
        ConfigError: If a value cannot be converted to the expected type.
    """
    raw = load_raw_config(project_root)
    try:
        return _resolve(project_root, raw, environ)
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise ConfigError(f"{project_root / CONFIG_FILENAME}: invalid value ({exc})") from exc


def _resolve(
    project_root: Path, raw: dict[str, Any], environ: Mapping[str, str] | None
) -> SiteConfig:
    html = raw["html"]
    images = raw["images"]
    port = int(raw["port"])
    ws_port = raw.get("ws_port")
    browsers = raw["css"].get("browsers")
    if isinstance(browsers, str):
        browsers = [browsers]
    return SiteConfig(
        project_root=project_root,
        source_dir=(project_root / raw["source_dir"]).resolve(),
        output_dir=(project_root / raw["output_dir"]).resolve(),
        private_prefix=str(raw["private_prefix"]),
        port=port,
        ws_port=int(ws_port) if ws_port is not None else port + 1,
        is_dev=is_dev_mode(environ),
        validation=ValidationRules(
            presets=list(html["presets"]),
            allow_trailing_whitespace=bool(html["allow_trailing_whitespace"]),
            allow_missing_labels=bool(html["allow_missing_labels"]),
            require_sri=bool(html["require_sri"]),
            rules=dict(html.get("rules") or {}),
        ),
        indent_size=int(html.get("indent_size", 2)),
        browsers=list(browsers) if browsers else None,
        jpeg_quality=int(images["jpeg_quality"]),
        progressive_jpeg=bool(images["progressive"]),
        svg_precision=int(images["svg_precision"]),
    )
