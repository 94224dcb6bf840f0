"""
Resource preloading for export runs.

Every visual clip intersecting the export region is resolved to a decoded
RGB bitmap before the first frame is drawn. Loads run concurrently; a source
that cannot be resolved or decoded is replaced by a placeholder bitmap so a
single broken clip never aborts the export.
"""

import asyncio
import inspect
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from previz.config import get_settings
from previz.exceptions import MediaLoadError
from previz.render.media_loader import MediaLoader
from previz.schemas.timeline import TimelineClip, TimelineSnapshot

logger = logging.getLogger(__name__)

PLACEHOLDER_COLOR = "#333333"
PLACEHOLDER_TEXT = "Image not available"
PLACEHOLDER_FONT_SIZE = 48

# Loading occupies the first half of export progress
PRELOAD_PROGRESS_SPAN = 50.0


@dataclass
class ImageCache:
    """Decoded bitmaps by clip id. Written once by the preloader."""

    bitmaps: dict[str, Image.Image] = field(default_factory=dict)
    placeholders: set[str] = field(default_factory=set)

    def get(self, clip_id: str) -> Image.Image | None:
        return self.bitmaps.get(clip_id)

    def __contains__(self, clip_id: str) -> bool:
        return clip_id in self.bitmaps

    def __len__(self) -> int:
        return len(self.bitmaps)

    def clear(self) -> None:
        for bitmap in self.bitmaps.values():
            bitmap.close()
        self.bitmaps.clear()
        self.placeholders.clear()


def create_placeholder(width: int | None = None, height: int | None = None) -> Image.Image:
    """Neutral gray bitmap labelled as unavailable."""
    settings = get_settings()
    width = width or settings.export_placeholder_width
    height = height or settings.export_placeholder_height

    image = Image.new("RGB", (width, height), PLACEHOLDER_COLOR)
    draw = ImageDraw.Draw(image)
    font = ImageFont.load_default(size=PLACEHOLDER_FONT_SIZE)
    draw.text(
        (width / 2, height / 2), PLACEHOLDER_TEXT, fill="white", font=font, anchor="mm"
    )
    return image


def resolve_source(clip: TimelineClip, snapshot: TimelineSnapshot | None = None) -> str | None:
    """Pick the source reference for a visual clip.

    Order: image URL, file URL, thumbnail, generic URL, then the project's
    storyboard image (by id or scene/shot/frame) for non-external clips.
    """
    for candidate in (clip.image_url, clip.file_url, clip.thumbnail, clip.url):
        if candidate:
            return candidate
    if snapshot is not None and not clip.is_external_file:
        image = snapshot.find_project_image(clip)
        if image is not None:
            return image.best_url
    return None


class ResourcePreloader:
    """Loads the visual clips of an export region into an ImageCache."""

    def __init__(
        self,
        snapshot: TimelineSnapshot,
        loader: MediaLoader,
        work_dir: Path,
        progress_callback: Optional[Callable[[float], Any]] = None,
    ):
        self.snapshot = snapshot
        self.loader = loader
        self.work_dir = work_dir
        self._progress_callback = progress_callback
        self.ffmpeg_path = get_settings().ffmpeg_path
        self._loaded = 0
        self._total = 0

    def clips_in_region(self, start: float, end: float) -> list[TimelineClip]:
        return [
            clip
            for clip in self.snapshot.timeline
            if clip.is_visual and clip.intersects(start, end)
        ]

    async def preload(self, start: float, end: float) -> ImageCache:
        """Resolve every visual clip in [start, end); returns once all loads settle."""
        clips = self.clips_in_region(start, end)
        cache = ImageCache()
        self._loaded = 0
        self._total = len(clips)

        logger.info(f"[PRELOAD] Loading {self._total} visual clips for {start:.3f}s-{end:.3f}s")

        if not clips:
            await self._report(PRELOAD_PROGRESS_SPAN)
            return cache

        results = await asyncio.gather(*(self._load_clip(clip) for clip in clips))
        for clip, (bitmap, is_placeholder) in zip(clips, results):
            cache.bitmaps[clip.id] = bitmap
            if is_placeholder:
                cache.placeholders.add(clip.id)

        logger.info(
            f"[PRELOAD] Done: {len(cache) - len(cache.placeholders)} loaded, "
            f"{len(cache.placeholders)} placeholders"
        )
        return cache

    async def _load_clip(self, clip: TimelineClip) -> tuple[Image.Image, bool]:
        try:
            source = resolve_source(clip, self.snapshot)
            if source is None:
                raise MediaLoadError(clip.id, "no source reference")
            bitmap = await self._decode(clip, source)
            return bitmap, False
        except Exception as e:
            reason = e.message if isinstance(e, MediaLoadError) else f"{type(e).__name__}: {e}"
            logger.warning(f"[PRELOAD] Clip {clip.id}: {reason}; using placeholder")
            return await asyncio.to_thread(create_placeholder), True
        finally:
            self._loaded += 1
            await self._report(self._loaded / self._total * PRELOAD_PROGRESS_SPAN)

    async def _decode(self, clip: TimelineClip, source: str) -> Image.Image:
        data = await self.loader.fetch(source)
        try:
            return await asyncio.to_thread(_decode_image, data)
        except (UnidentifiedImageError, OSError) as e:
            if clip.file_type != "video":
                raise MediaLoadError(source, f"not a decodable image ({e})") from e

        # Video source: sample one frame at the clip's source offset
        path = await self.loader.store(source, data, self.work_dir, f"src_{clip.id}")
        return await self._extract_video_frame(clip, source, path)

    async def _extract_video_frame(self, clip: TimelineClip, source: str, path: Path) -> Image.Image:
        cmd = [
            self.ffmpeg_path,
            "-v", "error",
            "-ss", f"{clip.audio_start_offset:.3f}",
            "-i", str(path),
            "-frames:v", "1",
            "-f", "image2pipe",
            "-vcodec", "png",
            "pipe:1",
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0 or not stdout:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            raise MediaLoadError(source, f"frame extraction failed: {stderr_text[-200:]}")
        try:
            return await asyncio.to_thread(_decode_image, stdout)
        except (UnidentifiedImageError, OSError) as e:
            raise MediaLoadError(source, str(e)) from e

    async def _report(self, percent: float) -> None:
        if self._progress_callback is None:
            return
        result = self._progress_callback(percent)
        if inspect.isawaitable(result):
            await result


def _decode_image(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as image:
        return image.convert("RGB")
