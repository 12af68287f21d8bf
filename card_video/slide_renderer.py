"""Render card titles into fixed-size PNG slides.

Each slide is first described as an SVG document (diagonal gradient plus a
centered title) and then rasterized by one of two backends:

- ``rsvg``: pipes the SVG into ``rsvg-convert``
- ``pillow``: paints the same description with Pillow, no external binary
"""
from __future__ import annotations

import html
import secrets
import subprocess
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from logging_utils import get_logger

from .errors import RenderError
from .models import Slide, truncate_title

logger = get_logger(__name__)

_SUPPORTED_RASTERIZERS = {"rsvg", "pillow"}
_FONT_CANDIDATES = ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "Arial.ttf")


@dataclass(frozen=True)
class SlideStyle:
    width: int = 1280
    height: int = 720
    gradient_start: str = "#ff2d95"
    gradient_end: str = "#2b0a5a"
    text_color: str = "#ffffff"
    font_family: str = "DejaVu Sans, Arial, sans-serif"
    font_size: int = 72
    min_font_size: int = 24
    font_path: Optional[str] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "SlideStyle":
        video_cfg = config.get("video", {}) if isinstance(config, dict) else {}
        slides_cfg = config.get("slides", {}) if isinstance(config, dict) else {}
        defaults = cls()
        return cls(
            width=int(video_cfg.get("width", defaults.width)),
            height=int(video_cfg.get("height", defaults.height)),
            gradient_start=str(slides_cfg.get("gradient_start", defaults.gradient_start)),
            gradient_end=str(slides_cfg.get("gradient_end", defaults.gradient_end)),
            text_color=str(slides_cfg.get("text_color", defaults.text_color)),
            font_family=str(slides_cfg.get("font_family", defaults.font_family)),
            font_size=int(slides_cfg.get("font_size", defaults.font_size)),
            min_font_size=int(slides_cfg.get("min_font_size", defaults.min_font_size)),
            font_path=str(slides_cfg["font_path"]) if slides_cfg.get("font_path") else None,
        )


def escape_markup(text: str) -> str:
    return html.escape(text, quote=True)


def hex_to_rgb(value: str | None, fallback: Tuple[int, int, int] = (255, 255, 255)) -> Tuple[int, int, int]:
    if not value:
        return fallback
    text = value.strip().lstrip("#")
    if len(text) not in (3, 6):
        return fallback
    if len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    try:
        return (int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16))
    except ValueError:
        return fallback


def fit_font_size(title: str, style: SlideStyle) -> int:
    """Shrink the font so an average-width glyph run fits 90% of the canvas."""
    if not title:
        return style.font_size
    # Bold sans glyphs average roughly 0.6em wide.
    fitted = int(style.width * 0.9 / (0.6 * len(title)))
    return max(style.min_font_size, min(style.font_size, fitted))


@dataclass(frozen=True)
class SlideDescription:
    ordinal: int
    title: str
    gradient_id: str
    font_size: int
    style: SlideStyle

    def to_svg(self) -> str:
        style = self.style
        text = escape_markup(self.title)
        family = escape_markup(style.font_family)
        return (
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{style.width}" height="{style.height}" '
            f'viewBox="0 0 {style.width} {style.height}">\n'
            "  <defs>\n"
            f'    <linearGradient id="{self.gradient_id}" x1="0" y1="0" x2="1" y2="1">\n'
            f'      <stop offset="0%" stop-color="{style.gradient_start}"/>\n'
            f'      <stop offset="100%" stop-color="{style.gradient_end}"/>\n'
            "    </linearGradient>\n"
            "  </defs>\n"
            f'  <rect width="{style.width}" height="{style.height}" fill="url(#{self.gradient_id})"/>\n'
            f'  <text x="50%" y="50%" font-family="{family}" font-size="{self.font_size}" '
            f'font-weight="bold" fill="{style.text_color}" text-anchor="middle" '
            f'dominant-baseline="middle">{text}</text>\n'
            "</svg>\n"
        )


class RsvgRasterizer:
    """Rasterize slide SVG through the ``rsvg-convert`` executable."""

    name = "rsvg"

    def __init__(self, binary: str = "rsvg-convert") -> None:
        self.binary = binary

    def rasterize(self, description: SlideDescription, output_path: Path) -> None:
        cmd = [
            self.binary,
            "--format",
            "png",
            "--width",
            str(description.style.width),
            "--height",
            str(description.style.height),
            "--output",
            str(output_path),
        ]
        logger.debug("rsvg: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                input=description.to_svg().encode("utf-8"),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise RenderError(
                f"rsvg-convert could not be started: {exc}", ordinal=description.ordinal
            ) from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or b"").decode("utf-8", errors="replace").strip()
            raise RenderError(
                f"rsvg-convert failed with exit code {proc.returncode}",
                ordinal=description.ordinal,
                detail=stderr,
            )


@lru_cache(maxsize=32)
def load_font(path: str | None, size: int) -> ImageFont.ImageFont:
    if path:
        font_path = Path(path).expanduser()
        if font_path.exists():
            return ImageFont.truetype(str(font_path), size=size)
        logger.warning("Font not found, falling back to defaults: %s", font_path)
    for candidate in _FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


class PillowRasterizer:
    """Paint the slide description directly with Pillow."""

    name = "pillow"

    def rasterize(self, description: SlideDescription, output_path: Path) -> None:
        style = description.style
        image = self._gradient(style)
        draw = ImageDraw.Draw(image)
        font = load_font(style.font_path, description.font_size)
        left, top, right, bottom = draw.textbbox((0, 0), description.title, font=font)
        x = (style.width - (right - left)) / 2 - left
        y = (style.height - (bottom - top)) / 2 - top
        draw.text((x, y), description.title, font=font, fill=hex_to_rgb(style.text_color))
        image.save(output_path, format="PNG")

    @staticmethod
    def _gradient(style: SlideStyle) -> Image.Image:
        start = np.array(hex_to_rgb(style.gradient_start), dtype=np.float32)
        end = np.array(hex_to_rgb(style.gradient_end), dtype=np.float32)
        xs = np.linspace(0.0, 1.0, style.width, dtype=np.float32)
        ys = np.linspace(0.0, 1.0, style.height, dtype=np.float32)
        # Top-left to bottom-right blend factor.
        t = (xs[np.newaxis, :] + ys[:, np.newaxis]) / 2.0
        pixels = start + (end - start) * t[..., np.newaxis]
        return Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8), "RGB")


def make_rasterizer(config: Dict[str, Any], *, rsvg_path: str = "rsvg-convert"):
    """Return the rasterizer selected by ``slides.rasterizer``."""
    slides_cfg = config.get("slides", {}) if isinstance(config, dict) else {}
    name = str(slides_cfg.get("rasterizer", "rsvg")).strip().lower() or "rsvg"
    if name not in _SUPPORTED_RASTERIZERS:
        raise ValueError(
            f"Unsupported rasterizer '{name}'. Supported rasterizers: {sorted(_SUPPORTED_RASTERIZERS)}"
        )
    if name == "pillow":
        logger.debug("Using Pillow rasterizer for slides")
        return PillowRasterizer()
    logger.debug("Using rsvg-convert rasterizer for slides: %s", rsvg_path)
    return RsvgRasterizer(rsvg_path)


class SlideRenderer:
    """Turn one card title into ``slide-<ordinal>.png`` inside a workspace."""

    def __init__(self, style: SlideStyle, rasterizer) -> None:
        self.style = style
        self.rasterizer = rasterizer

    def describe(self, title: str, ordinal: int) -> SlideDescription:
        text = truncate_title(title)
        return SlideDescription(
            ordinal=ordinal,
            title=text,
            gradient_id=f"bg-{ordinal}-{secrets.token_hex(4)}",
            font_size=fit_font_size(text, self.style),
            style=self.style,
        )

    def render(self, title: str, ordinal: int, workspace: Path) -> Slide:
        description = self.describe(title, ordinal)
        output_path = workspace / f"slide-{ordinal}.png"
        try:
            self.rasterizer.rasterize(description, output_path)
        except RenderError:
            raise
        except (OSError, ValueError) as exc:
            raise RenderError(f"Failed to rasterize slide {ordinal}: {exc}", ordinal=ordinal) from exc
        if not output_path.exists():
            raise RenderError(f"Rasterizer produced no file for slide {ordinal}", ordinal=ordinal)
        logger.debug("Rendered slide %d: %s", ordinal, output_path.name)
        return Slide(ordinal=ordinal, file_path=output_path)
