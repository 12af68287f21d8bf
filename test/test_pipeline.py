from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import card_video.pipeline as pipeline_module  # noqa: E402
from config_loader import default_config  # noqa: E402
from card_video.concat_plan import parse_plan  # noqa: E402
from card_video.errors import EncodeError, InvalidRequest, RenderError, WorkspaceError  # noqa: E402
from card_video.models import Card  # noqa: E402
from card_video.pipeline import PipelineState, VideoPipeline  # noqa: E402
from card_video.slide_renderer import PillowRasterizer, SlideRenderer, SlideStyle  # noqa: E402

FAKE_MP4 = b"\x00\x00\x00\x18ftypmp42fake-video-payload"


class FakeEncoder:
    """Records each call and what the plan looked like at encode time."""

    def __init__(self) -> None:
        self.calls: List[tuple[Path, Path]] = []
        self.plan_text = ""
        self.slides_present: List[bool] = []

    def encode(self, plan_file: Path, output_file: Path) -> Path:
        self.calls.append((plan_file, output_file))
        self.plan_text = plan_file.read_text(encoding="utf-8")
        self.slides_present = [entry.file_path.exists() for entry in parse_plan(self.plan_text)]
        output_file.write_bytes(FAKE_MP4)
        return output_file


class RecordingRasterizer(PillowRasterizer):
    def __init__(self, fail_ordinals: tuple[int, ...] = ()) -> None:
        self.fail_ordinals = fail_ordinals
        self.titles: dict[int, str] = {}
        self._lock = threading.Lock()

    def rasterize(self, description, output_path: Path) -> None:
        with self._lock:
            self.titles[description.ordinal] = description.title
        if description.ordinal in self.fail_ordinals:
            raise RenderError("boom", ordinal=description.ordinal)
        super().rasterize(description, output_path)


def _config(tmp_path: Path, **encoder_cfg):
    return default_config(
        {
            "video": {"width": 160, "height": 90},
            "slides": {"rasterizer": "pillow", "max_workers": 3, "font_size": 20, "min_font_size": 8},
            "encoder": encoder_cfg,
            "output": {"temp_directory": str(tmp_path / "work")},
        },
        project_root=tmp_path,
    )


def _pipeline(tmp_path: Path, rasterizer=None, encoder=None) -> VideoPipeline:
    config = _config(tmp_path)
    renderer = SlideRenderer(SlideStyle.from_config(config.raw), rasterizer or RecordingRasterizer())
    return VideoPipeline(config, renderer=renderer, encoder=encoder or FakeEncoder())


def _leftover_workspaces(tmp_path: Path) -> list[Path]:
    work = tmp_path / "work"
    return list(work.iterdir()) if work.exists() else []


def test_hello_world_end_to_end(tmp_path: Path) -> None:
    encoder = FakeEncoder()
    pipeline = _pipeline(tmp_path, encoder=encoder)

    video = pipeline.generate([Card(title="Hello"), Card(title="World")])

    assert len(encoder.calls) == 1
    file_lines = [line for line in encoder.plan_text.splitlines() if line.startswith("file ")]
    assert len(file_lines) == 3
    assert file_lines[0].endswith("slide-0.png'")
    assert file_lines[1].endswith("slide-1.png'")
    assert file_lines[2] == file_lines[1]
    assert all(encoder.slides_present)

    assert video.slide_count == 2
    assert video.content == FAKE_MP4
    assert video.size == len(video.content)
    assert video.mime_type == "video/mp4"
    assert video.filename.startswith("cards-") and video.filename.endswith(".mp4")

    plan_file, output_file = encoder.calls[0]
    assert plan_file.name == "slides.txt"
    assert output_file.name.startswith("slideshow-")
    assert not plan_file.parent.exists()
    assert _leftover_workspaces(tmp_path) == []
    assert pipeline.last_history == [
        PipelineState.IDLE,
        PipelineState.WORKSPACE_CREATED,
        PipelineState.SLIDES_RENDERED,
        PipelineState.PLAN_WRITTEN,
        PipelineState.ENCODED,
        PipelineState.OUTPUT_READ,
        PipelineState.CLEANED,
    ]


def test_slides_follow_card_order(tmp_path: Path) -> None:
    rasterizer = RecordingRasterizer()
    encoder = FakeEncoder()
    pipeline = _pipeline(tmp_path, rasterizer=rasterizer, encoder=encoder)
    titles = [f"Card title {i}" for i in range(6)]

    video = pipeline.generate([Card(title=t) for t in titles])

    assert video.slide_count == 6
    assert [rasterizer.titles[i] for i in range(6)] == titles
    paths = [entry.file_path.name for entry in parse_plan(encoder.plan_text)]
    assert paths == [f"slide-{i}.png" for i in range(6)] + ["slide-5.png"]


def test_long_title_is_truncated_without_error(tmp_path: Path) -> None:
    rasterizer = RecordingRasterizer()
    pipeline = _pipeline(tmp_path, rasterizer=rasterizer)

    pipeline.generate([Card(title="A" * 200)])

    assert rasterizer.titles[0] == "A" * 77 + "…"


def test_blank_titles_get_placeholder(tmp_path: Path) -> None:
    rasterizer = RecordingRasterizer()
    pipeline = _pipeline(tmp_path, rasterizer=rasterizer)

    pipeline.generate([Card(title="First"), Card(title="   "), Card(title="", image_reference="x.png")])

    assert rasterizer.titles == {0: "First", 1: "Card 2", 2: "Card 3"}


def test_titles_keep_inner_and_surrounding_spaces(tmp_path: Path) -> None:
    rasterizer = RecordingRasterizer()
    pipeline = _pipeline(tmp_path, rasterizer=rasterizer)

    pipeline.generate([Card(title="  Hi  "), Card(title="a  b")])

    assert rasterizer.titles == {0: "  Hi  ", 1: "a  b"}


@pytest.mark.parametrize("cards", [[], None])
def test_no_cards_is_rejected_before_workspace(tmp_path: Path, cards) -> None:
    encoder = FakeEncoder()
    pipeline = _pipeline(tmp_path, encoder=encoder)

    with pytest.raises(InvalidRequest) as excinfo:
        pipeline.generate(cards)

    assert excinfo.value.status_code == 400
    assert not (tmp_path / "work").exists()
    assert encoder.calls == []


def test_unreachable_encoder_cleans_workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FFMPEG_PATH", raising=False)
    config = _config(tmp_path, ffmpeg_path=str(tmp_path / "missing-ffmpeg"))
    pipeline = VideoPipeline(config)

    with pytest.raises(EncodeError) as excinfo:
        pipeline.generate([Card(title="Hello"), Card(title="World")])

    assert excinfo.value.state == PipelineState.PLAN_WRITTEN.value
    assert excinfo.value.status_code == 500
    assert (tmp_path / "work").exists()
    assert _leftover_workspaces(tmp_path) == []
    assert pipeline.last_history[-1] == PipelineState.CLEANED


def test_single_render_failure_fails_run_after_siblings_settle(tmp_path: Path) -> None:
    rasterizer = RecordingRasterizer(fail_ordinals=(1,))
    encoder = FakeEncoder()
    pipeline = _pipeline(tmp_path, rasterizer=rasterizer, encoder=encoder)

    with pytest.raises(RenderError) as excinfo:
        pipeline.generate([Card(title=f"T{i}") for i in range(4)])

    assert excinfo.value.ordinal == 1
    assert excinfo.value.state == PipelineState.WORKSPACE_CREATED.value
    assert sorted(rasterizer.titles) == [0, 1, 2, 3]
    assert encoder.calls == []
    assert _leftover_workspaces(tmp_path) == []


def test_unexpected_render_exception_is_wrapped(tmp_path: Path) -> None:
    class BrokenRasterizer:
        def rasterize(self, description, output_path: Path) -> None:
            raise RuntimeError("rasterizer crashed")

    pipeline = _pipeline(tmp_path, rasterizer=BrokenRasterizer())

    with pytest.raises(RenderError):
        pipeline.generate([Card(title="Hello")])
    assert _leftover_workspaces(tmp_path) == []


def test_read_back_failure(tmp_path: Path) -> None:
    class NoOutputEncoder(FakeEncoder):
        def encode(self, plan_file: Path, output_file: Path) -> Path:
            self.calls.append((plan_file, output_file))
            output_file.mkdir()
            return output_file

    pipeline = _pipeline(tmp_path, encoder=NoOutputEncoder())

    with pytest.raises(pipeline_module.ReadBackError) as excinfo:
        pipeline.generate([Card(title="Hello")])

    assert excinfo.value.state == PipelineState.ENCODED.value
    assert excinfo.value.to_payload() == {"error": "Failed to generate the video."}
    assert _leftover_workspaces(tmp_path) == []


def test_cleanup_failure_is_logged_not_raised(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    def failing_rmtree(path, *args, **kwargs):
        raise PermissionError(f"cannot remove {path}")

    monkeypatch.setattr(pipeline_module.shutil, "rmtree", failing_rmtree)
    pipeline = _pipeline(tmp_path)

    with caplog.at_level(logging.WARNING, logger="card_video.pipeline"):
        video = pipeline.generate([Card(title="Hello")])

    assert video.content == FAKE_MP4
    assert any("Failed to remove workspace" in record.getMessage() for record in caplog.records)


def test_concurrent_invocations_use_separate_workspaces(tmp_path: Path) -> None:
    encoder = FakeEncoder()
    pipeline = _pipeline(tmp_path, encoder=encoder)
    errors: List[BaseException] = []

    def run(label: str) -> None:
        try:
            pipeline.generate([Card(title=label), Card(title=label + "!")])
        except BaseException as exc:  # pragma: no cover - surfaced by the assert below
            errors.append(exc)

    threads = [threading.Thread(target=run, args=(f"run {i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    workspaces = {plan.parent for plan, _ in encoder.calls}
    assert len(workspaces) == 4
    assert _leftover_workspaces(tmp_path) == []


def test_workspace_creation_failure_is_reported_without_cleanup(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    rasterizer = RecordingRasterizer()
    encoder = FakeEncoder()
    pipeline = _pipeline(tmp_path, rasterizer=rasterizer, encoder=encoder)
    rmtree_calls: List[Path] = []

    def failing_mkdtemp(*args, **kwargs):
        raise OSError("No space left on device")

    monkeypatch.setattr(pipeline_module.tempfile, "mkdtemp", failing_mkdtemp)
    monkeypatch.setattr(pipeline_module.shutil, "rmtree", lambda path, *a, **k: rmtree_calls.append(path))

    with pytest.raises(WorkspaceError) as excinfo:
        pipeline.generate([Card(title="Hello")])

    assert excinfo.value.state == PipelineState.IDLE.value
    assert excinfo.value.status_code == 500
    assert rasterizer.titles == {}
    assert encoder.calls == []
    assert rmtree_calls == []
    assert pipeline.last_history == [PipelineState.IDLE]
