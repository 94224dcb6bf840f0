"""
Narrow interfaces between the export scheduler and the host media runtime.

The scheduler and compositor only talk to these protocols, so they can be
driven against ffmpeg in production and against in-memory fakes in tests.
"""

from dataclasses import dataclass
from typing import Protocol

import numpy as np
from PIL import Image


@dataclass
class ExportBlob:
    """Final encoded file produced by an encoder."""

    data: bytes
    mime_type: str  # video/mp4 or video/webm
    extension: str  # mp4 or webm

    @property
    def size(self) -> int:
        return len(self.data)


class FrameSink(Protocol):
    """Accepts composited frames at the export frame rate."""

    async def write_frame(self, frame: Image.Image) -> None: ...


class AudioSink(Protocol):
    """Accepts scheduled PCM segments against a shared media clock."""

    @property
    def current_time(self) -> float: ...

    def schedule(
        self, buffer: np.ndarray, when: float, offset: float, duration: float
    ) -> None: ...

    def stop_all(self) -> None: ...

    def close(self) -> None: ...


class Encoder(FrameSink, Protocol):
    """Negotiated encoding session consuming one frame sink and one audio sink."""

    mime_type: str
    extension: str

    @property
    def audio_sink(self) -> AudioSink: ...

    async def start(self) -> None: ...

    async def stop(self) -> ExportBlob: ...

    async def abort(self) -> None: ...
