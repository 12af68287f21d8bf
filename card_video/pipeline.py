from __future__ import annotations

import shutil
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from config_loader import AppConfig
from logging_utils import get_logger

from .concat_plan import DEFAULT_SLIDE_SECONDS, write_plan
from .encoder import EncoderInvoker, EncoderOptions
from .errors import CardVideoError, InvalidRequest, ReadBackError, RenderError, WorkspaceError
from .models import Card, GeneratedVideo, Slide, normalize_title
from .slide_renderer import SlideRenderer, SlideStyle, make_rasterizer

logger = get_logger(__name__)

WORKSPACE_PREFIX = "card-video-"


class PipelineState(str, Enum):
    IDLE = "idle"
    WORKSPACE_CREATED = "workspace_created"
    SLIDES_RENDERED = "slides_rendered"
    PLAN_WRITTEN = "plan_written"
    ENCODED = "encoded"
    OUTPUT_READ = "output_read"
    CLEANED = "cleaned"


class _RunTracker:
    """Per-invocation state holder; never shared between calls."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]

    def advance(self, state: PipelineState) -> None:
        logger.debug("[%s] %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)


class VideoPipeline:
    """Render cards to slides, encode them and return the finished MP4 bytes."""

    def __init__(
        self,
        config: AppConfig,
        *,
        renderer: Optional[SlideRenderer] = None,
        encoder: Optional[EncoderInvoker] = None,
    ) -> None:
        self.config = config
        slides_cfg = config.section("slides")
        self.slide_seconds = float(slides_cfg.get("duration_seconds", DEFAULT_SLIDE_SECONDS))
        self.max_workers = max(1, int(slides_cfg.get("max_workers", 4)))
        self.temp_root = config.temp_dir
        self.renderer = renderer or SlideRenderer(
            SlideStyle.from_config(config.raw),
            make_rasterizer(config.raw, rsvg_path=config.rsvg_path),
        )
        self.encoder = encoder or EncoderInvoker(
            EncoderOptions.from_config(config.raw, ffmpeg_path=config.ffmpeg_path)
        )
        # Observability for callers and tests; rebound on every generate() call.
        self.last_history: List[PipelineState] = []

    def generate(self, cards: Optional[Sequence[Card]]) -> GeneratedVideo:
        if not cards:
            raise InvalidRequest("No cards supplied")
        titles = [normalize_title(card.title, position) for position, card in enumerate(cards, start=1)]

        millis = int(time.time() * 1000)
        tracker = _RunTracker(run_id=f"{millis}")
        self.last_history = tracker.history
        try:
            with self._workspace(tracker) as workspace:
                slides = self._render_slides(titles, workspace)
                tracker.advance(PipelineState.SLIDES_RENDERED)

                plan_file = write_plan(slides, workspace, self.slide_seconds)
                tracker.advance(PipelineState.PLAN_WRITTEN)

                output_file = workspace / f"slideshow-{millis}.mp4"
                self.encoder.encode(plan_file, output_file)
                tracker.advance(PipelineState.ENCODED)

                try:
                    content = output_file.read_bytes()
                except OSError as exc:
                    raise ReadBackError(f"Failed to read encoded video {output_file}: {exc}") from exc
                tracker.advance(PipelineState.OUTPUT_READ)
        except CardVideoError as exc:
            if exc.state is None:
                exc.state = tracker.state.value
            logger.error(
                "Video generation failed | code=%s state=%s cards=%d | %s",
                exc.code,
                exc.state,
                len(cards),
                exc,
            )
            if exc.detail:
                logger.debug("Failure detail: %s", exc.detail)
            raise

        video = GeneratedVideo(
            content=content,
            filename=f"{self.config.filename_prefix}-{millis}.mp4",
            slide_count=len(slides),
        )
        logger.info("Video generated: %s (%d slides, %d bytes)", video.filename, video.slide_count, video.size)
        return video

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _workspace(self, tracker: _RunTracker) -> Iterator[Path]:
        try:
            if self.temp_root is not None:
                self.temp_root.mkdir(parents=True, exist_ok=True)
            workspace = Path(tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self.temp_root))
        except OSError as exc:
            raise WorkspaceError(f"Failed to create workspace: {exc}") from exc
        tracker.advance(PipelineState.WORKSPACE_CREATED)
        logger.debug("Workspace created: %s", workspace)
        try:
            yield workspace
        except CardVideoError as exc:
            exc.state = tracker.state.value
            raise
        finally:
            self._cleanup(workspace)
            tracker.advance(PipelineState.CLEANED)

    @staticmethod
    def _cleanup(workspace: Path) -> None:
        try:
            shutil.rmtree(workspace)
        except OSError as exc:
            logger.warning("Failed to remove workspace %s: %s", workspace, exc)

    def _render_slides(self, titles: Sequence[str], workspace: Path) -> List[Slide]:
        workers = min(self.max_workers, len(titles))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="slide-render") as executor:
            futures = [
                executor.submit(self.renderer.render, title, ordinal, workspace)
                for ordinal, title in enumerate(titles)
            ]
            wait(futures)

        slides: List[Slide] = []
        for ordinal, future in enumerate(futures):
            exc = future.exception()
            if exc is None:
                slides.append(future.result())
                continue
            if isinstance(exc, CardVideoError):
                raise exc
            raise RenderError(f"Slide {ordinal} failed to render: {exc}", ordinal=ordinal) from exc
        return slides
