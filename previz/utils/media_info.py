"""Inspect exported files with ffprobe."""

import json
import subprocess
from dataclasses import dataclass
from typing import Any

from previz.config import get_settings


@dataclass
class MediaInfo:
    """Container and first-stream details of an exported file."""

    duration_s: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    video_codec: str | None = None
    audio_codec: str | None = None
    sample_rate: int | None = None
    channels: int | None = None
    has_video: bool = False
    has_audio: bool = False

    def covers(self, duration: float, fps: float) -> bool:
        """True when the file lasts ``duration`` seconds within one frame interval."""
        if self.duration_s is None:
            return False
        return abs(self.duration_s - duration) <= 1 / fps


def _ffprobe_json(path: str) -> dict[str, Any]:
    cmd = [
        get_settings().ffprobe_path,
        "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        path,
    ]
    proc = subprocess.run(cmd, capture_output=True, text=True)
    if proc.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {proc.stderr.strip()}")

    try:
        return json.loads(proc.stdout)
    except json.JSONDecodeError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON: {e}") from e


def _parse_frame_rate(value: str) -> float | None:
    """``"30000/1001"`` -> 29.97; None for ``"0/0"`` or a bare number."""
    if "/" not in value:
        return None
    num, den = value.split("/")
    if int(den) == 0:
        return None
    return int(num) / int(den)


def probe_media(file_path: str) -> MediaInfo:
    """
    Probe an exported file.

    Only the first video and the first audio stream are described.

    Raises:
        RuntimeError: If ffprobe fails or returns unreadable output
    """
    data = _ffprobe_json(file_path)
    info = MediaInfo()

    duration = data.get("format", {}).get("duration")
    if duration is not None:
        info.duration_s = float(duration)

    video = next((s for s in data.get("streams", []) if s.get("codec_type") == "video"), None)
    audio = next((s for s in data.get("streams", []) if s.get("codec_type") == "audio"), None)

    if video is not None:
        info.has_video = True
        info.video_codec = video.get("codec_name")
        info.width = video.get("width")
        info.height = video.get("height")
        info.fps = _parse_frame_rate(video.get("r_frame_rate", "0/1"))

    if audio is not None:
        info.has_audio = True
        info.audio_codec = audio.get("codec_name")
        info.sample_rate = int(audio.get("sample_rate", 0)) or None
        info.channels = audio.get("channels")

    return info
