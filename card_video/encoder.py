from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from logging_utils import get_logger

from .errors import EncodeError

logger = get_logger(__name__)

STDERR_TAIL_LINES = 50


@dataclass(frozen=True)
class EncoderOptions:
    ffmpeg_path: str = "ffmpeg"
    width: int = 1280
    height: int = 720
    fps: int = 30
    codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = 23
    pix_fmt: str = "yuv420p"
    timeout_seconds: Optional[float] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any], *, ffmpeg_path: str = "ffmpeg") -> "EncoderOptions":
        video_cfg = config.get("video", {}) if isinstance(config, dict) else {}
        encoder_cfg = config.get("encoder", {}) if isinstance(config, dict) else {}
        defaults = cls()
        timeout = encoder_cfg.get("timeout_seconds")
        return cls(
            ffmpeg_path=ffmpeg_path,
            width=int(video_cfg.get("width", defaults.width)),
            height=int(video_cfg.get("height", defaults.height)),
            fps=int(video_cfg.get("fps", defaults.fps)),
            codec=str(video_cfg.get("codec", defaults.codec)),
            preset=str(video_cfg.get("preset", defaults.preset)),
            crf=int(video_cfg.get("crf", defaults.crf)),
            pix_fmt=str(video_cfg.get("pix_fmt", defaults.pix_fmt)),
            timeout_seconds=float(timeout) if timeout else None,
        )


def run_ffmpeg(
    args: Sequence[str],
    *,
    ffmpeg_path: str = "ffmpeg",
    cwd: Path | None = None,
    timeout: float | None = None,
) -> None:
    """Run ffmpeg with the given arguments, raising EncodeError on failure.

    Logs the full command for debuggability.
    """
    # Keep ffmpeg quiet: only errors; no stats; no banner
    cmd: List[str] = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostats"] + list(args)
    pretty = " ".join(a if " " not in a else f"'{a}'" for a in cmd)
    logger.debug("FFmpeg: %s", pretty)
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise EncodeError(f"ffmpeg timed out after {timeout} seconds") from exc
    except OSError as exc:
        raise EncodeError(f"ffmpeg could not be started ({ffmpeg_path}): {exc}") from exc

    if proc.returncode != 0:
        tail = (proc.stderr or "").splitlines()[-STDERR_TAIL_LINES:]
        for line in tail:
            logger.error("ffmpeg: %s", line)
        raise EncodeError(
            f"ffmpeg failed with exit code {proc.returncode}",
            returncode=proc.returncode,
            stderr_tail="\n".join(tail),
        )


class EncoderInvoker:
    """Encode a concat edit plan of still slides into one MP4 file."""

    def __init__(self, options: EncoderOptions) -> None:
        self.options = options

    def build_args(self, plan_file: Path, output_file: Path) -> List[str]:
        opts = self.options
        video_filter = (
            f"scale={opts.width}:{opts.height}:force_original_aspect_ratio=decrease,"
            f"pad={opts.width}:{opts.height}:(ow-iw)/2:(oh-ih)/2,"
            f"format={opts.pix_fmt}"
        )
        return [
            "-y",
            "-f",
            "concat",
            "-safe",
            "0",
            "-protocol_whitelist",
            "file",
            "-i",
            str(plan_file),
            "-vf",
            video_filter,
            "-r",
            str(opts.fps),
            "-c:v",
            opts.codec,
            "-preset",
            opts.preset,
            "-crf",
            str(opts.crf),
            "-pix_fmt",
            opts.pix_fmt,
            "-movflags",
            "+faststart",
            str(output_file),
        ]

    def encode(self, plan_file: Path, output_file: Path) -> Path:
        args = self.build_args(plan_file, output_file)
        run_ffmpeg(
            args,
            ffmpeg_path=self.options.ffmpeg_path,
            timeout=self.options.timeout_seconds,
        )
        if not output_file.exists() or output_file.stat().st_size == 0:
            raise EncodeError(f"ffmpeg produced no usable output at {output_file}")
        logger.info("Encoded slideshow: %s (%d bytes)", output_file.name, output_file.stat().st_size)
        return output_file
