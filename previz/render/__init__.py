from previz.render.audio_mixer import AudioMixer, MixBus
from previz.render.compositor import FrameCompositor
from previz.render.encoder import FFmpegEncodingSession, negotiate_codec
from previz.render.pipeline import ExportRun, ExportState, VideoExportService
from previz.render.preloader import ResourcePreloader

__all__ = [
    "AudioMixer",
    "ExportRun",
    "ExportState",
    "FFmpegEncodingSession",
    "FrameCompositor",
    "MixBus",
    "ResourcePreloader",
    "VideoExportService",
    "negotiate_codec",
]
