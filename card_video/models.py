from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

MAX_TITLE_LENGTH = 80
TRUNCATED_TITLE_LENGTH = 77
ELLIPSIS = "…"
VIDEO_MIME_TYPE = "video/mp4"


def truncate_title(title: str) -> str:
    if len(title) <= MAX_TITLE_LENGTH:
        return title
    return title[:TRUNCATED_TITLE_LENGTH] + ELLIPSIS


def normalize_title(title: Optional[str], position: int) -> str:
    """Return the text drawn for a card; ``position`` is 1-indexed."""
    text = title or ""
    if not text.strip():
        return f"Card {position}"
    return truncate_title(text)


@dataclass(frozen=True)
class Card:
    title: str
    image_reference: Optional[str] = None
    card_id: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Card":
        image = payload.get("image_reference")
        if image is None:
            image = payload.get("image_url")
        card_id = payload.get("id")
        return cls(
            title=str(payload.get("title") or ""),
            image_reference=str(image) if image else None,
            card_id=str(card_id) if card_id is not None else None,
        )


@dataclass(frozen=True)
class Slide:
    ordinal: int
    file_path: Path


@dataclass(frozen=True)
class PlanEntry:
    file_path: Path
    duration_seconds: Optional[float] = None

    @property
    def is_terminator(self) -> bool:
        return self.duration_seconds is None


@dataclass(frozen=True)
class GeneratedVideo:
    content: bytes
    filename: str
    slide_count: int
    mime_type: str = VIDEO_MIME_TYPE

    @property
    def size(self) -> int:
        return len(self.content)
