"""Tests for the resource preloader."""

import base64
import io
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from PIL import Image

from conftest import BLUE, GREEN, RED, make_snapshot, write_png
from previz.render.media_loader import MediaLoader
from previz.render.preloader import (
    PLACEHOLDER_COLOR,
    ResourcePreloader,
    create_placeholder,
    resolve_source,
)
from previz.schemas.timeline import TimelineClip


def _data_url(color, size=(8, 8)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode()


class TestResolveSource:
    """Tests for source lookup order."""

    def test_lookup_order(self):
        full = TimelineClip(
            id="c", start_time=0, end_time=1,
            image_url="img", file_url="file", thumbnail="thumb", url="url",
        )
        assert resolve_source(full) == "img"
        assert resolve_source(full.model_copy(update={"image_url": None})) == "file"
        assert resolve_source(full.model_copy(update={"image_url": None, "file_url": None})) == "thumb"
        assert (
            resolve_source(full.model_copy(update={"image_url": None, "file_url": None, "thumbnail": None}))
            == "url"
        )

    def test_falls_back_to_project_image(self):
        snapshot = make_snapshot(
            [{"id": "c", "startTime": 0, "endTime": 1, "sceneNumber": 1, "shotNumber": 2, "frameNumber": 3}],
            images=[
                {"name": "other", "url": "wrong.png", "sceneNumber": 9},
                {"name": "s1", "url": "orig.png", "compositeUrl": "edited.png",
                 "sceneNumber": 1, "shotNumber": 2, "frameNumber": 3},
            ],
        )

        assert resolve_source(snapshot.timeline[0], snapshot) == "edited.png"

    def test_external_clip_skips_project_lookup(self):
        snapshot = make_snapshot(
            [{"id": "c", "startTime": 0, "endTime": 1, "imageId": "s1", "isExternalFile": True}],
            images=[{"name": "s1", "url": "orig.png"}],
        )

        assert resolve_source(snapshot.timeline[0], snapshot) is None


class TestPlaceholder:
    def test_placeholder_is_gray_and_labelled(self):
        image = create_placeholder(320, 180)

        assert image.size == (320, 180)
        assert image.getpixel((0, 0)) == Image.new("RGB", (1, 1), PLACEHOLDER_COLOR).getpixel((0, 0))
        # Label pixels are white
        assert (255, 255, 255) in {color for _, color in image.getcolors(320 * 180)}

    def test_default_size(self):
        assert create_placeholder().size == (1920, 1080)


class TestResourcePreloader:
    """Tests for concurrent loading with placeholder substitution."""

    @pytest.mark.asyncio
    async def test_loads_visual_clips_in_region(self, tmp_path):
        red = write_png(tmp_path / "red.png", (16, 9), RED)
        snapshot = make_snapshot(
            [
                {"id": "in", "fileType": "image", "startTime": 0, "endTime": 2, "imageUrl": str(red)},
                {"id": "data", "startTime": 1, "endTime": 3, "imageUrl": _data_url(GREEN)},
                {"id": "out", "fileType": "image", "startTime": 5, "endTime": 6, "imageUrl": str(red)},
                {"id": "music", "fileType": "audio", "startTime": 0, "endTime": 6, "fileUrl": "a.wav"},
            ]
        )
        preloader = ResourcePreloader(snapshot, MediaLoader(), tmp_path)

        cache = await preloader.preload(0, 4)

        assert set(cache.bitmaps) == {"in", "data"}
        assert cache.placeholders == set()
        assert cache.get("in").getpixel((0, 0)) == RED
        assert cache.get("data").getpixel((0, 0)) == GREEN

    @pytest.mark.asyncio
    async def test_failure_substitutes_placeholder(self, tmp_path):
        blue = write_png(tmp_path / "blue.png", (16, 9), BLUE)
        broken = tmp_path / "broken.png"
        broken.write_bytes(b"not an image")
        snapshot = make_snapshot(
            [
                {"id": "ok", "fileType": "image", "startTime": 0, "endTime": 1, "imageUrl": str(blue)},
                {"id": "missing", "fileType": "image", "startTime": 0, "endTime": 1, "imageUrl": str(tmp_path / "nope.png")},
                {"id": "broken", "fileType": "image", "startTime": 0, "endTime": 1, "imageUrl": str(broken)},
                {"id": "nosource", "fileType": "image", "startTime": 0, "endTime": 1},
            ]
        )
        preloader = ResourcePreloader(snapshot, MediaLoader(), tmp_path)

        cache = await preloader.preload(0, 1)

        assert len(cache) == 4
        assert cache.placeholders == {"missing", "broken", "nosource"}
        assert cache.get("ok").getpixel((0, 0)) == BLUE
        assert cache.get("missing").size == (1920, 1080)

    @pytest.mark.asyncio
    async def test_unexpected_decode_errors_use_placeholder(self, tmp_path, monkeypatch):
        huge = write_png(tmp_path / "huge.png", (200, 200), RED)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        snapshot = make_snapshot(
            [
                {"id": "huge", "fileType": "image", "startTime": 0, "endTime": 1, "imageUrl": str(huge)},
                {"id": "svg", "fileType": "image", "startTime": 0, "endTime": 1,
                 "imageUrl": "data:image/svg+xml,%3Csvg%3E%E2%82%AC%3C/svg%3E"},
            ]
        )
        reports = []
        preloader = ResourcePreloader(snapshot, MediaLoader(), tmp_path, reports.append)

        cache = await preloader.preload(0, 1)

        assert cache.placeholders == {"huge", "svg"}
        assert reports[-1] == 50.0

    @pytest.mark.asyncio
    async def test_remote_video_is_downloaded_once(self, tmp_path):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request.url)
            return httpx.Response(200, content=b"\x00\x00\x00\x18ftypmp42")

        snapshot = make_snapshot(
            [{"id": "v", "fileType": "video", "startTime": 0, "endTime": 1,
              "fileUrl": "https://cdn.example.com/clip.mp4"}]
        )
        frame = io.BytesIO()
        Image.new("RGB", (8, 8), GREEN).save(frame, format="PNG")
        mock_proc = MagicMock()
        mock_proc.returncode = 0
        mock_proc.communicate = AsyncMock(return_value=(frame.getvalue(), b""))
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=mock_proc)) as mock_exec:
            cache = await ResourcePreloader(snapshot, MediaLoader(client=client), tmp_path).preload(0, 1)
        await client.aclose()

        assert len(requests) == 1
        assert cache.get("v").getpixel((0, 0)) == GREEN
        args = mock_exec.call_args[0]
        source_file = Path(args[args.index("-i") + 1])
        assert source_file.parent == tmp_path
        assert source_file.read_bytes() == b"\x00\x00\x00\x18ftypmp42"

    @pytest.mark.asyncio
    async def test_progress_reaches_half(self, tmp_path):
        red = write_png(tmp_path / "red.png", (4, 4), RED)
        snapshot = make_snapshot(
            [
                {"id": str(i), "fileType": "image", "startTime": i, "endTime": i + 1, "imageUrl": str(red)}
                for i in range(4)
            ]
        )
        reports = []
        preloader = ResourcePreloader(snapshot, MediaLoader(), tmp_path, reports.append)

        await preloader.preload(0, 4)

        assert reports == [12.5, 25.0, 37.5, 50.0]

    @pytest.mark.asyncio
    async def test_no_visual_clips_reports_half(self, tmp_path):
        snapshot = make_snapshot([{"id": "m", "fileType": "audio", "startTime": 0, "endTime": 1}])
        reports = []
        preloader = ResourcePreloader(snapshot, MediaLoader(), tmp_path, reports.append)

        cache = await preloader.preload(0, 1)

        assert len(cache) == 0
        assert reports == [50.0]

    @pytest.mark.asyncio
    async def test_video_source_is_sampled_with_ffmpeg(self, tmp_path):
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"\x00\x00\x00\x18ftypmp42")
        snapshot = make_snapshot(
            [{"id": "v", "fileType": "video", "startTime": 0, "endTime": 1, "fileUrl": str(video),
              "audioStartOffset": 2.5}]
        )
        frame = io.BytesIO()
        Image.new("RGB", (8, 8), GREEN).save(frame, format="PNG")

        mock_proc = MagicMock()
        mock_proc.returncode = 0
        mock_proc.communicate = AsyncMock(return_value=(frame.getvalue(), b""))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=mock_proc)) as mock_exec:
            cache = await ResourcePreloader(snapshot, MediaLoader(), tmp_path).preload(0, 1)

        assert cache.placeholders == set()
        assert cache.get("v").getpixel((0, 0)) == GREEN
        args = mock_exec.call_args[0]
        assert args[args.index("-ss") + 1] == "2.500"
        assert args[args.index("-i") + 1] == str(video)

    @pytest.mark.asyncio
    async def test_video_frame_extraction_failure_uses_placeholder(self, tmp_path):
        video = tmp_path / "clip.mp4"
        video.write_bytes(b"garbage")
        snapshot = make_snapshot(
            [{"id": "v", "fileType": "video", "startTime": 0, "endTime": 1, "fileUrl": str(video)}]
        )
        mock_proc = MagicMock()
        mock_proc.returncode = 1
        mock_proc.communicate = AsyncMock(return_value=(b"", b"Invalid data found"))

        with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=mock_proc)):
            cache = await ResourcePreloader(snapshot, MediaLoader(), tmp_path).preload(0, 1)

        assert cache.placeholders == {"v"}

    @pytest.mark.asyncio
    async def test_cache_clear_releases_bitmaps(self, tmp_path: Path):
        red = write_png(tmp_path / "red.png", (4, 4), RED)
        snapshot = make_snapshot(
            [{"id": "a", "fileType": "image", "startTime": 0, "endTime": 1, "imageUrl": str(red)}]
        )
        cache = await ResourcePreloader(snapshot, MediaLoader(), tmp_path).preload(0, 1)

        cache.clear()

        assert len(cache) == 0
        assert "a" not in cache
