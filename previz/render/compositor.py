"""Single-clip frame compositing onto a fixed-size canvas."""

import bisect
import logging
from dataclasses import dataclass

from PIL import Image

from previz.render.preloader import ImageCache
from previz.schemas.timeline import TimelineClip

logger = logging.getLogger(__name__)

BACKGROUND_COLOR = (0, 0, 0)


@dataclass(frozen=True)
class Rect:
    x: int
    y: int
    width: int
    height: int


def fit_rect(source_width: int, source_height: int, target_width: int, target_height: int) -> Rect:
    """Scale-to-fit placement of a source inside the target, letterboxed on one axis."""
    source_aspect = source_width / source_height
    target_aspect = target_width / target_height

    if source_aspect > target_aspect:
        # Wider than the canvas: fit width, bars top and bottom
        width = target_width
        height = max(1, round(target_width / source_aspect))
    else:
        # Taller or equal: fit height, bars left and right
        height = target_height
        width = max(1, round(target_height * source_aspect))

    return Rect(
        x=(target_width - width) // 2,
        y=(target_height - height) // 2,
        width=width,
        height=height,
    )


class ClipIndex:
    """
    Visual clips sorted by start time with a running maximum of end times.

    ``active_at(t)`` finds the first clip in timeline order with
    ``start <= t < end`` in O(log n): the first clip whose running end
    maximum exceeds ``t`` is the only candidate, since every earlier clip has
    already ended and every later one starts no earlier.
    """

    def __init__(self, clips: list[TimelineClip]):
        self.clips = sorted((c for c in clips if c.is_visual), key=lambda c: c.start_time)
        self._max_ends: list[float] = []
        running = float("-inf")
        for clip in self.clips:
            running = max(running, clip.end_time)
            self._max_ends.append(running)

    def __len__(self) -> int:
        return len(self.clips)

    def active_at(self, t: float) -> TimelineClip | None:
        i = bisect.bisect_right(self._max_ends, t)
        if i == len(self.clips):
            return None
        clip = self.clips[i]
        return clip if clip.start_time <= t else None


class FrameCompositor:
    """Owns the canvas and redraws it for a given timeline time."""

    def __init__(self, width: int, height: int, clips: list[TimelineClip], images: ImageCache):
        self.width = width
        self.height = height
        self.canvas = Image.new("RGB", (width, height), BACKGROUND_COLOR)
        self.index = ClipIndex(clips)
        self.images = images
        self._scaled: dict[str, tuple[Image.Image, Rect]] = {}
        self.current_clip_id: str | None = None

    def draw(self, timeline_time: float) -> None:
        """Overwrite the canvas with the frame at ``timeline_time``."""
        self.canvas.paste(BACKGROUND_COLOR, (0, 0, self.width, self.height))

        clip = self.index.active_at(timeline_time)
        if clip is None:
            self._set_current(None, timeline_time)
            return

        bitmap = self.images.get(clip.id)
        if bitmap is None:
            self._set_current(None, timeline_time)
            return

        scaled, rect = self._scaled_bitmap(clip.id, bitmap)
        self.canvas.paste(scaled, (rect.x, rect.y))
        self._set_current(clip.id, timeline_time)

    def _scaled_bitmap(self, clip_id: str, bitmap: Image.Image) -> tuple[Image.Image, Rect]:
        cached = self._scaled.get(clip_id)
        if cached is None:
            rect = fit_rect(bitmap.width, bitmap.height, self.width, self.height)
            if (rect.width, rect.height) == bitmap.size:
                scaled = bitmap
            else:
                scaled = bitmap.resize((rect.width, rect.height), Image.Resampling.LANCZOS)
            cached = (scaled, rect)
            self._scaled[clip_id] = cached
        return cached

    def _set_current(self, clip_id: str | None, timeline_time: float) -> None:
        if clip_id != self.current_clip_id:
            logger.debug(f"[COMPOSITOR] {timeline_time:.3f}s -> {clip_id or 'black'}")
            self.current_clip_id = clip_id

    def release(self) -> None:
        self._scaled.clear()
