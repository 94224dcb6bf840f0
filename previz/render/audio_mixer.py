"""
Audio mixing for export runs.

Audio clips intersecting the export region are decoded with FFmpeg into
float32 PCM buffers at the mix rate. At the moment recording begins, every
decoded clip is scheduled onto a MixBus against one shared clock reference,
so inter-clip timing is exact regardless of when each decode finished.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from previz.config import get_settings
from previz.exceptions import MediaLoadError
from previz.render.interfaces import AudioSink
from previz.render.media_loader import MediaLoader
from previz.schemas.timeline import TimelineClip, TimelineSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ScheduledSegment:
    """One buffer scheduled on the mix bus, all values in seconds."""

    buffer: np.ndarray
    when: float
    offset: float
    duration: float


class MixBus:
    """
    Shared mix destination with a media clock.

    The clock starts at 0.0 and is advanced by the encoding session as frames
    are accepted. ``render`` sums all scheduled segments into one buffer.
    """

    def __init__(self, sample_rate: int | None = None, channels: int | None = None):
        settings = get_settings()
        self.sample_rate = sample_rate or settings.render_audio_sample_rate
        self.channels = channels or settings.render_audio_channels
        self.segments: list[ScheduledSegment] = []
        self._clock = 0.0
        self._closed = False

    @property
    def current_time(self) -> float:
        return self._clock

    @property
    def closed(self) -> bool:
        return self._closed

    def advance(self, seconds: float) -> None:
        self._clock += seconds

    def schedule(self, buffer: np.ndarray, when: float, offset: float, duration: float) -> None:
        if self._closed:
            raise RuntimeError("Mix bus is closed")
        self.segments.append(ScheduledSegment(buffer, when, offset, duration))

    def stop_all(self) -> None:
        self.segments.clear()

    def close(self) -> None:
        self.stop_all()
        self._closed = True

    def render(self, duration: float) -> np.ndarray:
        """Mix all scheduled segments into a (samples, channels) float32 buffer."""
        total = int(round(duration * self.sample_rate))
        mix = np.zeros((total, self.channels), dtype=np.float32)

        for segment in self.segments:
            start = int(round(segment.when * self.sample_rate))
            offset = int(round(segment.offset * self.sample_rate))
            length = int(round(segment.duration * self.sample_rate))

            source = segment.buffer[offset : offset + length]
            if start >= total or len(source) == 0:
                continue
            source = source[: total - start]
            mix[start : start + len(source)] += source

        np.clip(mix, -1.0, 1.0, out=mix)
        return mix


@dataclass
class AudioBufferCache:
    """Decoded PCM buffers by clip id, plus the clips they belong to."""

    buffers: dict[str, np.ndarray] = field(default_factory=dict)
    clips: dict[str, TimelineClip] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.buffers)

    def clear(self) -> None:
        self.buffers.clear()
        self.clips.clear()


class AudioMixer:
    """Decodes audio clips and schedules them onto an AudioSink."""

    def __init__(self, snapshot: TimelineSnapshot, loader: MediaLoader, work_dir: Path):
        settings = get_settings()
        self.snapshot = snapshot
        self.loader = loader
        self.work_dir = work_dir
        self.ffmpeg_path = settings.ffmpeg_path
        self.sample_rate = settings.render_audio_sample_rate
        self.channels = settings.render_audio_channels
        self.cache = AudioBufferCache()

    def clips_in_region(self, start: float, end: float) -> list[TimelineClip]:
        return [
            clip
            for clip in self.snapshot.timeline
            if clip.is_audio and audio_source(clip) and clip.intersects(start, end)
        ]

    async def load(self, start: float, end: float) -> AudioBufferCache:
        """Decode every audio clip in [start, end). Failed clips are skipped."""
        clips = self.clips_in_region(start, end)
        if not clips:
            return self.cache

        results = await asyncio.gather(
            *(self._decode_clip(clip) for clip in clips), return_exceptions=True
        )
        for clip, result in zip(clips, results):
            if isinstance(result, MediaLoadError):
                logger.warning(f"[AUDIO MIX] Skipping clip {clip.id} ({clip.file_name}): {result.message}")
                continue
            if isinstance(result, Exception):
                logger.warning(
                    f"[AUDIO MIX] Skipping clip {clip.id} ({clip.file_name}): "
                    f"{type(result).__name__}: {result}"
                )
                continue
            if isinstance(result, BaseException):
                raise result
            self.cache.buffers[clip.id] = result
            self.cache.clips[clip.id] = clip

        logger.info(f"[AUDIO MIX] Decoded {len(self.cache)}/{len(clips)} audio clips")
        return self.cache

    async def _decode_clip(self, clip: TimelineClip) -> np.ndarray:
        source = audio_source(clip)
        path = await self.loader.materialize(source, self.work_dir, f"audio_{clip.id}")
        cmd = [
            self.ffmpeg_path,
            "-v", "error",
            "-i", str(path),
            "-vn",
            "-f", "f32le",
            "-acodec", "pcm_f32le",
            "-ac", str(self.channels),
            "-ar", str(self.sample_rate),
            "pipe:1",
        ]
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            raise MediaLoadError(source, f"audio decode failed: {stderr_text[-200:]}")

        samples = np.frombuffer(stdout, dtype=np.float32)
        usable = len(samples) - len(samples) % self.channels
        return samples[:usable].reshape(-1, self.channels)

    def schedule(
        self,
        sink: AudioSink,
        recording_start: float,
        export_start: float,
        export_duration: float,
    ) -> int:
        """
        Schedule every decoded clip relative to ``recording_start``.

        Returns:
            Number of clips scheduled
        """
        scheduled = 0
        for clip_id, buffer in self.cache.buffers.items():
            clip = self.cache.clips[clip_id]
            clip_start = max(0.0, clip.start_time - export_start)
            clip_end = min(export_duration, clip.end_time - export_start)
            duration = clip_end - clip_start
            if duration <= 0:
                continue

            sink.schedule(buffer, recording_start + clip_start, clip.audio_start_offset, duration)
            scheduled += 1
            logger.debug(
                f"[AUDIO MIX] Clip {clip_id}: at +{clip_start:.3f}s, "
                f"offset {clip.audio_start_offset:.3f}s, for {duration:.3f}s"
            )
        return scheduled


def audio_source(clip: TimelineClip) -> str | None:
    return clip.file_url or clip.url
