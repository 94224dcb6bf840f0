"""Frame/time conversion helpers for export regions."""

import math

# Guards ceil() against products like 10 * 30 -> 300.00000000000006
_FRAME_ROUNDING_DIGITS = 6


def time_to_frame(seconds: float, frame_rate: float) -> int:
    return round(seconds * frame_rate)


def frame_to_time(frame: int, frame_rate: float) -> float:
    return round(frame / frame_rate, 3)


def count_frames(duration: float, fps: float) -> int:
    """Number of frames needed to cover ``duration`` seconds: ceil(duration * fps)."""
    if duration <= 0:
        return 0
    return math.ceil(round(duration * fps, _FRAME_ROUNDING_DIGITS))
