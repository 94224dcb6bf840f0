"""
Encoding session backed by an FFmpeg subprocess.

Codec negotiation mirrors a media-recorder style ``isTypeSupported`` check:
candidates are tried in preference order against the encoders and muxers the
local FFmpeg build reports. Frames are piped to FFmpeg as raw ``rgb24``; the
mixed audio track is muxed in once the video stream is finalized.
"""

import asyncio
import logging
import subprocess
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path

from PIL import Image

from previz.config import get_settings
from previz.exceptions import CodecNegotiationError, EncoderRuntimeError
from previz.render.audio_mixer import MixBus
from previz.render.interfaces import ExportBlob

logger = logging.getLogger(__name__)

REFERENCE_PIXELS = 1920 * 1080

BASE_BITRATES = {
    "low": 1_000_000,
    "medium": 5_000_000,
    "high": 10_000_000,
}

# Applied to mp4 exports below high quality to bound encode latency
MP4_BITRATE_FACTOR = 0.6

STDERR_TAIL_LINES = 40


@dataclass(frozen=True)
class CodecCandidate:
    """A container/codec combination and the FFmpeg settings that produce it."""

    mime_type: str  # full type including codecs parameter
    container: str  # FFmpeg muxer name
    video_encoder: str
    audio_encoder: str
    video_args: tuple[str, ...] = field(default_factory=tuple)

    @property
    def base_mime_type(self) -> str:
        return self.mime_type.split(";", 1)[0]

    @property
    def extension(self) -> str:
        return self.container


_H264_ARGS = ("-preset", "veryfast", "-profile:v", "baseline", "-level", "3.0")
_VPX_ARGS = ("-deadline", "realtime", "-cpu-used", "8")

VP8 = CodecCandidate("video/webm;codecs=vp8", "webm", "libvpx", "libopus", _VPX_ARGS)
VP9 = CodecCandidate("video/webm;codecs=vp9", "webm", "libvpx-vp9", "libopus", _VPX_ARGS)
AVC3 = CodecCandidate(
    "video/mp4;codecs=avc3.42E01E", "mp4", "libx264", "aac", (*_H264_ARGS, "-tag:v", "avc3")
)
AVC1 = CodecCandidate(
    "video/mp4;codecs=avc1.42E01E", "mp4", "libx264", "aac", (*_H264_ARGS, "-tag:v", "avc1")
)

CODEC_PREFERENCES: dict[str, tuple[CodecCandidate, ...]] = {
    "mp4": (AVC3, AVC1, VP8),
    "webm": (VP9, VP8),
}


class CodecSupport:
    """Encoders and muxers available in the local FFmpeg build."""

    def __init__(self, encoders: set[str], muxers: set[str]):
        self.encoders = encoders
        self.muxers = muxers

    @classmethod
    async def probe(cls, ffmpeg_path: str | None = None) -> "CodecSupport":
        ffmpeg_path = ffmpeg_path or get_settings().ffmpeg_path
        encoders_out = await _run_listing(ffmpeg_path, "-encoders")
        muxers_out = await _run_listing(ffmpeg_path, "-muxers")
        support = cls(parse_encoders(encoders_out), parse_muxers(muxers_out))
        logger.debug(
            f"[ENCODER] FFmpeg reports {len(support.encoders)} encoders, {len(support.muxers)} muxers"
        )
        return support

    def is_type_supported(self, candidate: CodecCandidate) -> bool:
        return candidate.video_encoder in self.encoders and candidate.container in self.muxers

    def has_encoder(self, name: str) -> bool:
        return name in self.encoders


async def _run_listing(ffmpeg_path: str, flag: str) -> str:
    proc = await asyncio.create_subprocess_exec(
        ffmpeg_path, "-hide_banner", flag,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise EncoderRuntimeError(
            f"ffmpeg {flag} failed: {stderr.decode('utf-8', errors='replace').strip()}"
        )
    return stdout.decode("utf-8", errors="replace")


def parse_encoders(output: str) -> set[str]:
    """Names from ``ffmpeg -encoders`` (the table after the ``------`` rule)."""
    names = set()
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("---"):
            in_table = True
            continue
        if in_table and stripped:
            parts = stripped.split()
            if len(parts) >= 2:
                names.add(parts[1])
    return names


def parse_muxers(output: str) -> set[str]:
    """Muxer names from ``ffmpeg -muxers``; comma-joined aliases are split."""
    names = set()
    in_table = False
    for line in output.splitlines():
        stripped = line.strip()
        if stripped.startswith("--"):
            in_table = True
            continue
        if in_table and stripped:
            parts = stripped.split()
            if len(parts) >= 2 and "E" in parts[0]:
                names.update(parts[1].split(","))
    return names


def negotiate_codec(requested_format: str, support: CodecSupport) -> CodecCandidate:
    """First supported candidate for the requested format.

    Raises:
        CodecNegotiationError: If no candidate is supported
    """
    candidates = CODEC_PREFERENCES.get(requested_format)
    if not candidates:
        raise CodecNegotiationError(requested_format)

    for candidate in candidates:
        if support.is_type_supported(candidate):
            if candidate.base_mime_type != f"video/{requested_format}":
                logger.warning(
                    f"[ENCODER] No {requested_format} codec available, falling back to {candidate.mime_type}"
                )
            else:
                logger.info(f"[ENCODER] Negotiated {candidate.mime_type}")
            return candidate

    raise CodecNegotiationError(requested_format, [c.mime_type for c in candidates])


def compute_bitrate(quality: str, width: int, height: int, container: str) -> int:
    """Quality base rate scaled by pixel count; mp4 below ``high`` is cut by 40%."""
    base = BASE_BITRATES.get(quality, BASE_BITRATES["medium"])
    bitrate = int(base * (width * height) / REFERENCE_PIXELS)
    if container == "mp4" and quality != "high":
        bitrate = int(bitrate * MP4_BITRATE_FACTOR)
    return bitrate


class FFmpegEncodingSession:
    """
    One negotiated encoding session.

    Frames written through ``write_frame`` advance the media clock of the
    session's mix bus by one frame interval. ``stop`` finalizes the video,
    muxes the mixed audio when anything was scheduled, and returns the file.
    """

    def __init__(
        self,
        candidate: CodecCandidate,
        width: int,
        height: int,
        fps: int,
        bitrate: int,
        work_dir: Path,
        audio_enabled: bool = True,
    ):
        settings = get_settings()
        self.candidate = candidate
        self.mime_type = candidate.base_mime_type
        self.extension = candidate.extension
        self.width = width
        self.height = height
        self.fps = fps
        self.bitrate = bitrate
        self.work_dir = work_dir
        self.audio_enabled = audio_enabled
        self.ffmpeg_path = settings.ffmpeg_path
        self.audio_bitrate = settings.render_audio_bitrate

        self._mix_bus = MixBus()
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None
        self.frames_written = 0

    @property
    def audio_sink(self) -> MixBus:
        return self._mix_bus

    @property
    def video_path(self) -> Path:
        return self.work_dir / f"video.{self.extension}"

    @property
    def output_path(self) -> Path:
        return self.work_dir / f"export.{self.extension}"

    def build_video_command(self) -> list[str]:
        cmd = [
            self.ffmpeg_path, "-y",
            "-hide_banner", "-loglevel", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgb24",
            "-s", f"{self.width}x{self.height}",
            "-r", str(self.fps),
            "-i", "pipe:0",
            "-c:v", self.candidate.video_encoder,
            *self.candidate.video_args,
            "-b:v", str(self.bitrate),
            # yuv420p needs even dimensions
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-pix_fmt", "yuv420p",
            "-an",
        ]
        if self.candidate.container == "mp4":
            cmd.extend(["-movflags", "+faststart"])
        cmd.extend(["-f", self.candidate.container, str(self.video_path)])
        return cmd

    def build_mux_command(self, audio_path: Path, duration: float) -> list[str]:
        mix = self._mix_bus
        cmd = [
            self.ffmpeg_path, "-y",
            "-hide_banner", "-loglevel", "error",
            "-i", str(self.video_path),
            "-f", "f32le",
            "-ar", str(mix.sample_rate),
            "-ac", str(mix.channels),
            "-i", str(audio_path),
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", self.candidate.audio_encoder,
            "-b:a", self.audio_bitrate,
            "-t", f"{duration:.6f}",
        ]
        if self.candidate.container == "mp4":
            cmd.extend(["-movflags", "+faststart"])
        cmd.extend(["-f", self.candidate.container, str(self.output_path)])
        return cmd

    async def start(self) -> None:
        if self._proc is not None:
            raise EncoderRuntimeError("session already started")

        cmd = self.build_video_command()
        logger.info(
            f"[ENCODER] Starting {self.candidate.mime_type} {self.width}x{self.height}"
            f"@{self.fps} {self.bitrate}bps"
        )
        self._proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def _read_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        async for raw_line in self._proc.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    def _stderr_text(self) -> str:
        return "\n".join(self._stderr_tail) or "no output"

    async def write_frame(self, frame: Image.Image) -> None:
        if self._proc is None or self._proc.stdin is None:
            raise EncoderRuntimeError("session not started")
        if frame.size != (self.width, self.height):
            raise ValueError(f"Frame size {frame.size} does not match {self.width}x{self.height}")

        data = frame.tobytes() if frame.mode == "RGB" else frame.convert("RGB").tobytes()
        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            await self._wait_stderr()
            raise EncoderRuntimeError(f"encoder closed its input ({self._stderr_text()})") from e

        self.frames_written += 1
        self._mix_bus.advance(1 / self.fps)

    async def _wait_stderr(self) -> None:
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(self._stderr_task, timeout=2)
            except asyncio.TimeoutError:
                self._stderr_task.cancel()

    async def stop(self) -> ExportBlob:
        if self._proc is None or self._proc.stdin is None:
            raise EncoderRuntimeError("session not started")

        self._proc.stdin.close()
        try:
            await self._proc.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("[ENCODER] stdin already closed by encoder")

        returncode = await self._proc.wait()
        await self._wait_stderr()
        if returncode != 0:
            logger.error(f"[ENCODER] FFmpeg exited with {returncode}: {self._stderr_text()}")
            raise EncoderRuntimeError(f"ffmpeg exited with code {returncode}: {self._stderr_text()}")

        duration = self.frames_written / self.fps
        final_path = self.video_path
        if self.audio_enabled and self._mix_bus.segments:
            final_path = await self._mux_audio(duration)

        data = await asyncio.to_thread(final_path.read_bytes)
        logger.info(
            f"[ENCODER] Finished {self.frames_written} frames ({duration:.3f}s), {len(data)} bytes"
        )
        return ExportBlob(data=data, mime_type=self.mime_type, extension=self.extension)

    async def _mux_audio(self, duration: float) -> Path:
        mix = await asyncio.to_thread(self._mix_bus.render, duration)
        audio_path = self.work_dir / "mix.f32le"
        await asyncio.to_thread(audio_path.write_bytes, mix.tobytes())

        cmd = self.build_mux_command(audio_path, duration)
        result = await asyncio.to_thread(subprocess.run, cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise EncoderRuntimeError(f"audio mux failed: {result.stderr.strip()}")
        return self.output_path

    async def abort(self) -> None:
        if self._proc is not None and self._proc.returncode is None:
            logger.warning("[ENCODER] Aborting encoder process")
            self._proc.kill()
            await self._proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()


async def open_encoding_session(
    requested_format: str,
    quality: str,
    width: int,
    height: int,
    fps: int,
    work_dir: Path,
    support: CodecSupport | None = None,
) -> FFmpegEncodingSession:
    """Negotiate a codec for the request and create a session for it."""
    support = support or await CodecSupport.probe()
    candidate = negotiate_codec(requested_format, support)
    bitrate = compute_bitrate(quality, width, height, candidate.container)

    audio_enabled = support.has_encoder(candidate.audio_encoder)
    if not audio_enabled:
        logger.warning(f"[ENCODER] Audio encoder {candidate.audio_encoder} unavailable, exporting without audio")

    return FFmpegEncodingSession(
        candidate, width, height, fps, bitrate, work_dir, audio_enabled=audio_enabled
    )
