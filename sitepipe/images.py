"""Image stage for Sitepipe.

Each image type has its own optimizer; the stage holds one OPTIMIZE step per
optimizer and each step only applies to the file types it understands.

- SVG: svgo, keeping the viewBox, dropping <title> and clamping numbers to a
  fixed number of decimal digits.
- JPEG: Pillow, re-encoded at quality 75 with progressive scans.
- PNG: Pillow lossless optimization.

Output is binary and produces no diagnostics.
"""

from __future__ import annotations

import io
import json
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from PIL import Image, UnidentifiedImageError

from .executable_utils import run_tool
from .models import FileEntry
from .protocols import ImageOptimizer
from .stages import Step, StepContext, StepKind, StepResult, TransformError, TransformStage

SVGO = "svgo"

# Plugins that take a floatPrecision parameter.
PRECISION_PLUGINS = (
    "cleanupNumericValues",
    "cleanupListOfValues",
    "convertPathData",
    "convertTransform",
    "convertShapeToPath",
    "mergePaths",
)
# Subset of PRECISION_PLUGINS enabled by svgo's preset-default.
_PRESET_DEFAULT_PLUGINS = frozenset(
    {
        "cleanupNumericValues",
        "convertPathData",
        "convertTransform",
        "convertShapeToPath",
        "mergePaths",
    }
)


def svgo_config(precision: int = 2) -> dict[str, Any]:
    """Return the svgo configuration object.

    Args:
        precision: Decimal digits kept by every precision-aware plugin.

    Returns:
        Dictionary suitable for ``export default`` in svgo.config.mjs.
    """
    overrides: dict[str, Any] = {"removeViewBox": False}
    extra: list[Any] = ["removeTitle"]
    for name in PRECISION_PLUGINS:
        params = {"floatPrecision": precision}
        if name in _PRESET_DEFAULT_PLUGINS:
            overrides[name] = params
        else:
            extra.append({"name": name, "params": params})
    return {
        "plugins": [
            {"name": "preset-default", "params": {"overrides": overrides}},
            *extra,
        ]
    }


class SvgoOptimizer:
    """Optimizes SVG files with the svgo CLI."""

    tools = (SVGO,)

    def __init__(self, project_root: Path, precision: int = 2):
        self.project_root = project_root
        self.precision = precision

    def can_optimize(self, entry: FileEntry) -> bool:
        return entry.path.suffix.lower() == ".svg"

    def optimize(self, data: bytes, entry: FileEntry) -> bytes:
        with tempfile.TemporaryDirectory(prefix="sitepipe-") as tmp:
            config_path = Path(tmp) / "svgo.config.mjs"
            config_path.write_text(
                f"export default {json.dumps(svgo_config(self.precision))};\n",
                encoding="utf-8",
            )
            result = run_tool(
                SVGO,
                ["--config", str(config_path), "--input", "-", "--output", "-"],
                self.project_root,
                input_text=data.decode("utf-8"),
            )
        if result.returncode != 0:
            raise TransformError(entry.display_path, f"svgo failed: {result.stderr.strip()}")
        return result.stdout.encode("utf-8")


class JpegOptimizer:
    """Re-encodes JPEG files with Pillow.

    Attributes:
        quality: JPEG quality (1-95).
        progressive: Whether to write progressive scans.
    """

    SUPPORTED_EXTENSIONS = {".jpg", ".jpeg"}

    def __init__(self, quality: int = 75, progressive: bool = True):
        self.quality = quality
        self.progressive = progressive

    def can_optimize(self, entry: FileEntry) -> bool:
        return entry.path.suffix.lower() in self.SUPPORTED_EXTENSIONS

    def optimize(self, data: bytes, entry: FileEntry) -> bytes:
        buffer = io.BytesIO()
        with _open_image(data, entry) as img:
            if img.mode not in ("RGB", "L", "CMYK"):
                img = img.convert("RGB")
            img.save(
                buffer,
                format="JPEG",
                quality=self.quality,
                progressive=self.progressive,
                optimize=True,
            )
        return buffer.getvalue()


class PngOptimizer:
    """Losslessly optimizes PNG files with Pillow."""

    SUPPORTED_EXTENSIONS = {".png"}

    def can_optimize(self, entry: FileEntry) -> bool:
        return entry.path.suffix.lower() in self.SUPPORTED_EXTENSIONS

    def optimize(self, data: bytes, entry: FileEntry) -> bytes:
        buffer = io.BytesIO()
        with _open_image(data, entry) as img:
            img.save(buffer, format="PNG", optimize=True)
        return buffer.getvalue()


def _open_image(data: bytes, entry: FileEntry) -> Image.Image:
    try:
        return Image.open(io.BytesIO(data))
    except UnidentifiedImageError as exc:
        raise TransformError(entry.display_path, f"Unreadable image: {exc}", exc) from exc


def optimize_step(optimizer: ImageOptimizer, name: str) -> Step:
    def _optimize(content: bytes, context: StepContext) -> StepResult:
        return StepResult(optimizer.optimize(content, context.entry))

    return Step(
        StepKind.OPTIMIZE,
        name,
        _optimize,
        tools=tuple(getattr(optimizer, "tools", ())),
        applies_to=optimizer.can_optimize,
    )


def build_image_stage(optimizers: Sequence[tuple[str, ImageOptimizer]]) -> TransformStage:
    """Assemble the image stage from (name, optimizer) pairs, in order."""
    return TransformStage(
        "images",
        [optimize_step(optimizer, name) for name, optimizer in optimizers],
        binary=True,
    )


def default_optimizers(
    project_root: Path,
    jpeg_quality: int = 75,
    progressive: bool = True,
    svg_precision: int = 2,
) -> list[tuple[str, ImageOptimizer]]:
    return [
        ("svgo", SvgoOptimizer(project_root, precision=svg_precision)),
        ("jpeg", JpegOptimizer(quality=jpeg_quality, progressive=progressive)),
        ("png", PngOptimizer()),
    ]
