"""Tests for timeline schemas, export plan validation and small utilities."""

import pytest
from pydantic import ValidationError

from conftest import make_snapshot
from previz.config import Settings
from previz.exceptions import (
    EmptyTimelineError,
    InvalidExportRegionError,
    InvalidExportSettingsError,
    InvalidResolutionError,
)
from previz.render.plan import build_export_plan
from previz.schemas.export import ExportSettings
from previz.schemas.timeline import TimelineClip
from previz.utils.resolution import default_resolutions, parse_aspect_ratio, parse_resolution
from previz.utils.timecode import count_frames, frame_to_time, time_to_frame


class TestTimelineSchemas:
    """Tests for snapshot parsing."""

    def test_camel_case_keys(self):
        clip = TimelineClip.model_validate(
            {"id": "a", "fileType": "video", "startTime": 1, "endTime": 3,
             "fileUrl": "v.mp4", "audioStartOffset": 0.5}
        )

        assert clip.file_type == "video"
        assert clip.file_url == "v.mp4"
        assert clip.audio_start_offset == 0.5

    def test_end_time_from_duration(self):
        clip = TimelineClip.model_validate({"id": "a", "startTime": 2, "duration": 1.5})

        assert clip.end_time == 3.5

    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            TimelineClip.model_validate({"id": "a", "startTime": 2, "endTime": 2})

    def test_needs_end_or_duration(self):
        with pytest.raises(ValidationError):
            TimelineClip.model_validate({"id": "a", "startTime": 0})

    @pytest.mark.parametrize(
        "file_type,external,visual",
        [("image", False, True), ("video", False, True), (None, False, True),
         (None, True, False), ("audio", False, False), ("external", False, False)],
    )
    def test_is_visual(self, file_type, external, visual):
        clip = TimelineClip(id="a", file_type=file_type, is_external_file=external, start_time=0, end_time=1)

        assert clip.is_visual is visual

    def test_duration_is_latest_end_of_any_clip(self):
        snapshot = make_snapshot(
            [
                {"id": "v", "fileType": "image", "startTime": 0, "endTime": 4},
                {"id": "a", "fileType": "audio", "startTime": 2, "endTime": 9.5},
            ]
        )

        assert snapshot.duration == 9.5
        assert make_snapshot([]).duration == 0

    def test_sorted_clips_is_stable(self):
        snapshot = make_snapshot(
            [
                {"id": "b", "startTime": 1, "endTime": 2},
                {"id": "a1", "startTime": 0, "endTime": 1},
                {"id": "a2", "startTime": 0, "endTime": 1},
            ]
        )

        assert [c.id for c in snapshot.sorted_clips()] == ["a1", "a2", "b"]

    def test_project_image_by_id_prefers_composite(self):
        snapshot = make_snapshot(
            [{"id": "c", "startTime": 0, "endTime": 1, "imageId": "img-2"}],
            images=[
                {"name": "img-1", "url": "one.png"},
                {"name": "img-2", "url": "two.png", "compositeUrl": "two-edited.png"},
            ],
        )

        image = snapshot.find_project_image(snapshot.timeline[0])

        assert image.name == "img-2"
        assert image.best_url == "two-edited.png"


class TestExportPlan:
    """Tests for settings and region validation."""

    @pytest.fixture
    def snapshot(self):
        return make_snapshot([{"id": "a", "fileType": "image", "startTime": 0, "endTime": 10}])

    @pytest.fixture
    def settings(self):
        return Settings()

    def test_defaults_cover_whole_timeline(self, snapshot, settings):
        plan = build_export_plan(snapshot, ExportSettings(), settings)

        assert (plan.width, plan.height) == (1920, 1080)
        assert (plan.start, plan.end) == (0, 10)
        assert plan.total_frames == 240

    def test_total_frames_rounds_up(self, snapshot, settings):
        plan = build_export_plan(
            snapshot, ExportSettings(fps=30, start_time=0, end_time=1.01), settings
        )

        assert plan.total_frames == 31

    def test_frame_time_has_no_drift(self, snapshot, settings):
        plan = build_export_plan(snapshot, ExportSettings(fps=30, start_time=2), settings)

        assert plan.frame_time(0) == 2
        assert plan.frame_time(30) == 3
        assert plan.frame_time(239) == pytest.approx(2 + 239 / 30)

    def test_empty_timeline(self, settings):
        with pytest.raises(EmptyTimelineError):
            build_export_plan(make_snapshot([]), ExportSettings(), settings)

    @pytest.mark.parametrize(
        "field,value",
        [("format", "avi"), ("fps", 25), ("quality", "ultra")],
    )
    def test_invalid_settings(self, snapshot, settings, field, value):
        with pytest.raises(InvalidExportSettingsError, match=field):
            build_export_plan(snapshot, ExportSettings(**{field: value}), settings)

    @pytest.mark.parametrize("resolution", ["1920", "0x1080", "1921x1080", "axb", "1920x1080x2"])
    def test_invalid_resolution(self, snapshot, settings, resolution):
        with pytest.raises(InvalidResolutionError):
            build_export_plan(snapshot, ExportSettings(resolution=resolution), settings)

    @pytest.mark.parametrize(
        "start,end",
        [(-1, 5), (5, 5), (6, 5), (0, 10.5)],
    )
    def test_invalid_region(self, snapshot, settings, start, end):
        with pytest.raises(InvalidExportRegionError, match="timeline duration \\(10.00s\\)"):
            build_export_plan(snapshot, ExportSettings(start_time=start, end_time=end), settings)

    def test_end_within_tolerance_is_clamped(self, snapshot, settings):
        plan = build_export_plan(
            snapshot, ExportSettings(start_time=9, end_time=10.0005), settings
        )

        assert plan.end == 10
        assert plan.total_frames == 24


class TestResolution:
    def test_parse_resolution(self):
        assert parse_resolution("1280x720") == (1280, 720)
        assert parse_resolution(" 854X480 ") == (854, 480)

    def test_parse_resolution_respects_max(self):
        with pytest.raises(InvalidResolutionError):
            parse_resolution("1280x720", max_dimension=1000)

    @pytest.mark.parametrize(
        "ratio,expected",
        [("16:9", 16 / 9), ("4:3", 4 / 3), ("none", 16 / 9), (None, 16 / 9), ("bogus", 16 / 9)],
    )
    def test_parse_aspect_ratio(self, ratio, expected):
        assert parse_aspect_ratio(ratio) == pytest.approx(expected)

    def test_custom_aspect_ratio(self):
        assert parse_aspect_ratio("custom", 1, 1) == 1

    def test_default_resolutions(self):
        options = default_resolutions("16:9")

        assert [o.value for o in options] == ["1920x1080", "1280x720", "854x480"]
        assert options[0].label == "1920x1080 (Full HD)"

    def test_default_resolutions_square(self):
        assert [o.value for o in default_resolutions("1:1")] == ["1920x1920", "1280x1280", "854x854"]


class TestTimecode:
    def test_time_frame_conversion(self):
        assert time_to_frame(1.5, 24) == 36
        assert frame_to_time(37, 24) == 1.542

    @pytest.mark.parametrize(
        "duration,fps,expected",
        [(10, 30, 300), (1.05, 30, 32), (0.5, 24, 12), (0, 24, 0), (1 / 3, 60, 20)],
    )
    def test_count_frames(self, duration, fps, expected):
        assert count_frames(duration, fps) == expected
