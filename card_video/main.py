from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List

from config_loader import default_config, load_config
from logging_utils import configure_logging, get_logger

from .errors import CardVideoError, InvalidRequest
from .models import Card
from .pipeline import VideoPipeline

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Card slideshow video generator")
    parser.add_argument("cards", help="Path to a JSON file with a list of cards (or {\"cards\": [...]})")
    parser.add_argument(
        "--config",
        help="Path to YAML configuration (defaults are used when omitted)",
    )
    parser.add_argument(
        "--output",
        help="Output MP4 path (default: suggested filename in the current directory)",
    )
    parser.add_argument(
        "--rasterizer",
        choices=["rsvg", "pillow"],
        help="Override slides.rasterizer from the config",
    )
    return parser


def load_cards(path: Path | str) -> List[Card]:
    with Path(path).expanduser().open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    if isinstance(payload, dict):
        payload = payload.get("cards") or []
    if not isinstance(payload, list):
        raise ValueError(f"Cards file must contain a list of cards: {path}")
    return [Card.from_dict(item) for item in payload if isinstance(item, dict)]


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config) if args.config else default_config()
    if args.rasterizer:
        config.raw.setdefault("slides", {})["rasterizer"] = args.rasterizer

    configure_logging(level=config.logging_level, log_file=config.log_file)
    logger.debug("Config: %s", config.dumps())

    cards = load_cards(args.cards)
    pipeline = VideoPipeline(config)
    try:
        video = pipeline.generate(cards)
    except InvalidRequest as exc:
        logger.error("%s", exc.public_message)
        return 2
    except CardVideoError as exc:
        logger.error("%s (%s)", exc.public_message, exc.code)
        return 1

    output_path = Path(args.output).expanduser() if args.output else Path.cwd() / video.filename
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(video.content)
    logger.info("Slideshow video created: %s (%d bytes)", output_path, video.size)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
