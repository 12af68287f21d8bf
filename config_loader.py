"""Configuration loader for the card video pipeline."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ModuleNotFoundError as exc:  # pragma: no cover - import guard
    raise RuntimeError(
        "PyYAML is required. Please install it with `pip install pyyaml`."
    ) from exc


CONFIG_ENV_VAR = "CARD_VIDEO_CONFIG"
FFMPEG_ENV_VAR = "FFMPEG_PATH"
RSVG_ENV_VAR = "RSVG_CONVERT_PATH"


@dataclass
class AppConfig:
    """Wrapper around raw configuration with resolved paths."""

    raw: Dict[str, Any]
    config_path: Optional[Path]
    project_root: Path
    temp_dir: Optional[Path]
    log_file: Optional[Path]

    @property
    def logging_level(self) -> str:
        level = (
            self.raw.get("logging", {}).get("level")
            or self.raw.get("logging", {}).get("LEVEL")
            or "INFO"
        )
        return str(level).upper()

    @property
    def ffmpeg_path(self) -> str:
        env_value = os.getenv(FFMPEG_ENV_VAR)
        if env_value:
            return env_value
        return str(self.section("encoder").get("ffmpeg_path") or "ffmpeg")

    @property
    def rsvg_path(self) -> str:
        env_value = os.getenv(RSVG_ENV_VAR)
        if env_value:
            return env_value
        return str(self.section("slides").get("rsvg_path") or "rsvg-convert")

    @property
    def filename_prefix(self) -> str:
        return str(self.section("output").get("filename_prefix") or "cards")

    def section(self, name: str) -> Dict[str, Any]:
        value = self.raw.get(name, {})
        return value if isinstance(value, dict) else {}

    def to_debug_dict(self) -> Dict[str, Any]:
        return {
            "config_path": str(self.config_path) if self.config_path else None,
            "temp_dir": str(self.temp_dir) if self.temp_dir else None,
            "log_file": str(self.log_file) if self.log_file else None,
            "ffmpeg_path": self.ffmpeg_path,
            "rasterizer": self.section("slides").get("rasterizer", "rsvg"),
        }

    def dumps(self) -> str:
        """Return a JSON string for diagnostics."""
        return json.dumps(self.to_debug_dict(), ensure_ascii=False, indent=2)


def _build_config(raw: Dict[str, Any], config_path: Optional[Path], root: Path) -> AppConfig:
    output_cfg = raw.get("output", {}) or {}
    temp_name = output_cfg.get("temp_directory")
    temp_dir = (root / temp_name).resolve() if temp_name else None

    log_file_name = (raw.get("logging", {}) or {}).get("file")
    log_file = (root / log_file_name).resolve() if log_file_name else None

    return AppConfig(
        raw=raw,
        config_path=config_path,
        project_root=root,
        temp_dir=temp_dir,
        log_file=log_file,
    )


def load_config(path: Path | str, project_root: Path | None = None) -> AppConfig:
    """Load YAML config and resolve key directories."""
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    root = project_root.resolve() if project_root else config_path.parent
    return _build_config(raw, config_path, root)


def default_config(overrides: Dict[str, Any] | None = None, project_root: Path | None = None) -> AppConfig:
    """Build an in-memory config; sections in ``overrides`` replace the defaults."""
    root = (project_root or Path.cwd()).resolve()
    return _build_config(dict(overrides or {}), None, root)


def load_config_from_env(project_root: Path | None = None) -> AppConfig:
    """Load the file named by CARD_VIDEO_CONFIG, falling back to defaults."""
    path = os.getenv(CONFIG_ENV_VAR)
    if path:
        return load_config(path, project_root=project_root)
    return default_config(project_root=project_root)
