"""
Card slideshow video generation package.

Renders each card title into a slide, builds an FFmpeg concat plan and
encodes the slides into a single MP4 inside a throwaway workspace.
"""

from __future__ import annotations

__all__ = [
    "Card",
    "GeneratedVideo",
    "VideoPipeline",
]

from .models import Card, GeneratedVideo
from .pipeline import VideoPipeline
