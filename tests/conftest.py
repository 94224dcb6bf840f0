"""
Pytest fixtures for previz export tests.

Pipeline tests run against FakeEncoder, an in-memory Encoder that keeps every
written frame and every scheduled audio segment, so no ffmpeg binary is needed.
Tests that do need a real ffmpeg are marked with @pytest.mark.requires_ffmpeg
and skipped when it is not on PATH.
"""

import shutil
from pathlib import Path

import pytest
from PIL import Image

from previz.config import Settings
from previz.render.audio_mixer import MixBus
from previz.render.interfaces import ExportBlob
from previz.render.plan import ExportPlan
from previz.schemas.timeline import TimelineSnapshot

FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None


def pytest_collection_modifyitems(config, items):
    skip_ffmpeg = pytest.mark.skip(reason="ffmpeg not found on PATH")
    for item in items:
        if "requires_ffmpeg" in item.keywords and not FFMPEG_AVAILABLE:
            item.add_marker(skip_ffmpeg)


RED = (255, 0, 0)
GREEN = (0, 255, 0)
BLUE = (0, 0, 255)
BLACK = (0, 0, 0)


def write_png(path: Path, size: tuple[int, int], color: tuple[int, int, int]) -> Path:
    Image.new("RGB", size, color).save(path, format="PNG")
    return path


def make_snapshot(clips: list[dict], **kwargs) -> TimelineSnapshot:
    return TimelineSnapshot.model_validate({"timeline": clips, **kwargs})


class RecordingMixBus(MixBus):
    """MixBus that logs each schedule() call into the owning encoder's events."""

    def __init__(self, events: list[str], **kwargs):
        super().__init__(**kwargs)
        self.events = events

    def schedule(self, buffer, when: float, offset: float, duration: float) -> None:
        self.events.append("schedule")
        super().schedule(buffer, when, offset, duration)


class FakeEncoder:
    """In-memory Encoder recording frames and scheduled audio."""

    def __init__(
        self,
        plan: ExportPlan,
        mime_type: str = "video/mp4",
        extension: str = "mp4",
        fail_on_frame: int | None = None,
    ):
        self.plan = plan
        self.mime_type = mime_type
        self.extension = extension
        self.fail_on_frame = fail_on_frame
        self.events: list[str] = []
        self.mix_bus = RecordingMixBus(self.events, sample_rate=8000, channels=2)
        self.frames: list[Image.Image] = []
        self.scheduled = []
        self.aborted = False

    @property
    def audio_sink(self) -> MixBus:
        return self.mix_bus

    async def start(self) -> None:
        self.events.append("start")

    async def write_frame(self, frame: Image.Image) -> None:
        if "start" not in self.events:
            raise AssertionError("frame written before start()")
        if self.fail_on_frame is not None and len(self.frames) == self.fail_on_frame:
            from previz.exceptions import EncoderRuntimeError

            raise EncoderRuntimeError("simulated encoder crash")
        self.events.append("frame")
        self.frames.append(frame.copy())
        self.mix_bus.advance(1 / self.plan.fps)

    async def stop(self) -> ExportBlob:
        self.events.append("stop")
        self.scheduled = list(self.mix_bus.segments)
        return ExportBlob(data=b"fake-video-bytes", mime_type=self.mime_type, extension=self.extension)

    async def abort(self) -> None:
        self.events.append("abort")
        self.aborted = True


class FakeEncoderFactory:
    """Encoder factory that remembers the encoders it created."""

    def __init__(self, **encoder_kwargs):
        self.encoder_kwargs = encoder_kwargs
        self.encoders: list[FakeEncoder] = []

    async def __call__(self, plan: ExportPlan, work_dir: Path) -> FakeEncoder:
        encoder = FakeEncoder(plan, **self.encoder_kwargs)
        self.encoders.append(encoder)
        return encoder

    @property
    def last(self) -> FakeEncoder:
        return self.encoders[-1]


@pytest.fixture
def export_settings(tmp_path: Path) -> Settings:
    """Settings with no settle/drain delays and a temporary output directory."""
    return Settings(
        export_output_dir=str(tmp_path / "exports"),
        export_settle_delay_s=0.0,
        export_drain_grace_s=0.0,
        export_frame_pacing=False,
    )


@pytest.fixture
def encoder_factory() -> FakeEncoderFactory:
    return FakeEncoderFactory()


@pytest.fixture
def red_png(tmp_path: Path) -> Path:
    return write_png(tmp_path / "red.png", (160, 90), RED)


@pytest.fixture
def blue_png(tmp_path: Path) -> Path:
    return write_png(tmp_path / "blue.png", (160, 90), BLUE)
