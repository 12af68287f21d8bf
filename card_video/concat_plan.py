"""Edit plans for the FFmpeg concat demuxer.

A plan lists every slide with its on-screen duration, then repeats the last
slide once more without a duration. The concat demuxer ignores the duration
of the final entry, so without the repeat the last slide would flash by.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from logging_utils import get_logger

from .errors import WorkspaceError
from .models import PlanEntry, Slide

logger = get_logger(__name__)

PLAN_FILENAME = "slides.txt"
DEFAULT_SLIDE_SECONDS = 2.0
_ESCAPED_QUOTE = "'\\''"


def escape_concat_path(path: Path | str) -> str:
    return str(path).replace("'", _ESCAPED_QUOTE)


def unescape_concat_path(text: str) -> str:
    return text.replace(_ESCAPED_QUOTE, "'")


def _format_duration(seconds: float) -> str:
    return f"{seconds:g}"


def build_plan(
    slides: Sequence[Slide], duration_seconds: float = DEFAULT_SLIDE_SECONDS
) -> Tuple[PlanEntry, ...]:
    """Return plan entries in slide order plus the trailing terminator entry."""
    if not slides:
        raise ValueError("concat: no slides provided")
    entries: List[PlanEntry] = [
        PlanEntry(file_path=slide.file_path, duration_seconds=duration_seconds) for slide in slides
    ]
    entries.append(PlanEntry(file_path=slides[-1].file_path, duration_seconds=None))
    return tuple(entries)


def render_plan(entries: Iterable[PlanEntry]) -> str:
    lines: List[str] = []
    for entry in entries:
        lines.append(f"file '{escape_concat_path(entry.file_path)}'")
        if not entry.is_terminator:
            lines.append(f"duration {_format_duration(entry.duration_seconds)}")
    return "\n".join(lines) + "\n"


def parse_plan(text: str) -> Tuple[PlanEntry, ...]:
    """Parse plan text written by ``render_plan`` back into entries."""
    entries: List[PlanEntry] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        keyword, _, value = line.partition(" ")
        if keyword == "file":
            value = value.strip()
            if len(value) < 2 or value[0] != "'" or value[-1] != "'":
                raise ValueError(f"concat: unquoted file entry: {raw_line!r}")
            entries.append(PlanEntry(file_path=Path(unescape_concat_path(value[1:-1]))))
        elif keyword == "duration":
            if not entries or not entries[-1].is_terminator:
                raise ValueError(f"concat: duration without a preceding file: {raw_line!r}")
            previous = entries.pop()
            entries.append(PlanEntry(file_path=previous.file_path, duration_seconds=float(value)))
        else:
            raise ValueError(f"concat: unknown directive: {raw_line!r}")
    return tuple(entries)


def write_plan(
    slides: Sequence[Slide],
    workspace: Path,
    duration_seconds: float = DEFAULT_SLIDE_SECONDS,
) -> Path:
    """Write ``slides.txt`` into the workspace and return its path."""
    entries = build_plan(slides, duration_seconds)
    plan_file = workspace / PLAN_FILENAME
    try:
        plan_file.write_text(render_plan(entries), encoding="utf-8")
    except OSError as exc:
        raise WorkspaceError(f"concat: failed to write plan file {plan_file}: {exc}") from exc
    logger.debug("concat: plan file => %s (%d slides)", plan_file, len(slides))
    return plan_file
