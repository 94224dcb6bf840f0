"""Validation of export requests into a concrete render plan."""

from dataclasses import dataclass

from previz.config import Settings, get_settings
from previz.exceptions import (
    EmptyTimelineError,
    InvalidExportRegionError,
    InvalidExportSettingsError,
)
from previz.schemas.export import EXPORT_FORMATS, EXPORT_FPS, EXPORT_QUALITIES, ExportSettings
from previz.schemas.timeline import TimelineSnapshot
from previz.utils.resolution import parse_resolution
from previz.utils.timecode import count_frames


@dataclass(frozen=True)
class ExportPlan:
    """Validated export parameters. All times in timeline seconds."""

    format: str
    quality: str
    width: int
    height: int
    fps: int
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    @property
    def total_frames(self) -> int:
        return count_frames(self.duration, self.fps)

    def frame_time(self, frame_index: int) -> float:
        """Timeline time of a frame, computed from its index to avoid drift."""
        return self.start + frame_index / self.fps


def build_export_plan(
    snapshot: TimelineSnapshot,
    export_settings: ExportSettings,
    settings: Settings | None = None,
) -> ExportPlan:
    """
    Validate settings against the snapshot.

    Raises:
        EmptyTimelineError: If the snapshot has no clips
        InvalidExportSettingsError: If format, fps or quality is unsupported
        InvalidResolutionError: If the resolution is malformed or out of range
        InvalidExportRegionError: If the region is outside the timeline
    """
    settings = settings or get_settings()

    if not snapshot.timeline:
        raise EmptyTimelineError()

    if export_settings.format not in EXPORT_FORMATS:
        raise InvalidExportSettingsError("format", export_settings.format, EXPORT_FORMATS)
    if export_settings.fps not in EXPORT_FPS:
        raise InvalidExportSettingsError("fps", export_settings.fps, EXPORT_FPS)
    if export_settings.quality not in EXPORT_QUALITIES:
        raise InvalidExportSettingsError("quality", export_settings.quality, EXPORT_QUALITIES)

    width, height = parse_resolution(export_settings.resolution, settings.export_max_dimension)

    duration = snapshot.duration
    start = export_settings.start_time if export_settings.start_time is not None else 0.0
    end = export_settings.end_time if export_settings.end_time is not None else duration

    if start < 0 or end <= start or end > duration + settings.export_region_epsilon_s:
        raise InvalidExportRegionError(start, end, duration)
    end = min(end, duration)
    # Clamping can only collapse the region when start sits inside the tolerance
    if end <= start:
        raise InvalidExportRegionError(start, end, duration)

    return ExportPlan(
        format=export_settings.format,
        quality=export_settings.quality,
        width=width,
        height=height,
        fps=export_settings.fps,
        start=start,
        end=end,
    )
