"""
Export pipeline: drives one timeline export from preload to delivered file.

An ExportRun moves through an explicit state machine:

    IDLE -> PRELOADING -> FIRST_FRAME_DRAWN -> RECORDING -> DRAINING -> COMPLETE
                     (any non-terminal state) -> FAILED

Ordering guarantees:
1. Every image load and audio decode settles before the first frame is drawn
2. The first frame is on the canvas before the encoder starts
3. Audio is scheduled once, after the settle delay, against a single
   ``recording_start`` read from the encoder's media clock
4. Exactly ``ceil(duration * fps)`` frames are written, each at
   ``start + index / fps``

VideoExportService allows at most one run in flight and always releases that
guard, whatever the outcome.
"""

import asyncio
import inspect
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, BinaryIO, Callable, Optional
from uuid import uuid4

from previz.config import Settings, get_settings
from previz.exceptions import (
    CaptureSurfaceUnavailableError,
    ExportInProgressError,
    IllegalStateTransitionError,
    PrevizError,
)
from previz.render.audio_mixer import AudioMixer
from previz.render.compositor import FrameCompositor
from previz.render.encoder import open_encoding_session
from previz.render.interfaces import Encoder, ExportBlob
from previz.render.media_loader import MediaLoader
from previz.render.plan import ExportPlan, build_export_plan
from previz.render.preloader import PRELOAD_PROGRESS_SPAN, ImageCache, ResourcePreloader
from previz.schemas.export import ExportSettings
from previz.schemas.timeline import TimelineSnapshot

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Any]
EncoderFactory = Callable[[ExportPlan, Path], Awaitable[Encoder]]


# ============================================================================
# State machine
# ============================================================================


class ExportState(Enum):
    """Export run state."""

    IDLE = "idle"
    PRELOADING = "preloading"
    FIRST_FRAME_DRAWN = "first_frame_drawn"
    RECORDING = "recording"
    DRAINING = "draining"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportState.COMPLETE, ExportState.FAILED)


TRANSITIONS: dict[ExportState, frozenset[ExportState]] = {
    ExportState.IDLE: frozenset({ExportState.PRELOADING, ExportState.FAILED}),
    ExportState.PRELOADING: frozenset({ExportState.FIRST_FRAME_DRAWN, ExportState.FAILED}),
    ExportState.FIRST_FRAME_DRAWN: frozenset({ExportState.RECORDING, ExportState.FAILED}),
    ExportState.RECORDING: frozenset({ExportState.DRAINING, ExportState.FAILED}),
    ExportState.DRAINING: frozenset({ExportState.COMPLETE, ExportState.FAILED}),
    ExportState.COMPLETE: frozenset(),
    ExportState.FAILED: frozenset(),
}


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass
class ExportResult:
    """Delivered export file."""

    filename: str
    mime_type: str
    extension: str
    size: int
    frames: int
    path: Optional[Path] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "mime_type": self.mime_type,
            "extension": self.extension,
            "size": self.size,
            "frames": self.frames,
            "path": str(self.path) if self.path else None,
        }


def sanitize_project_name(name: str | None, default: str = "Storyboard") -> str:
    """Replace every character outside ``[A-Za-z0-9]`` with an underscore."""
    return re.sub(r"[^a-z0-9]", "_", name or default, flags=re.IGNORECASE)


def export_filename(project_name: str | None, extension: str, default: str = "Storyboard") -> str:
    return f"{sanitize_project_name(project_name, default)}_export.{extension}"


async def default_encoder_factory(plan: ExportPlan, work_dir: Path) -> Encoder:
    """Negotiate an FFmpeg encoding session for the plan."""
    return await open_encoding_session(
        plan.format, plan.quality, plan.width, plan.height, plan.fps, work_dir
    )


# ============================================================================
# Export run
# ============================================================================


class ExportRun:
    """One export of a timeline region to a single encoded file."""

    def __init__(
        self,
        snapshot: TimelineSnapshot,
        plan: ExportPlan,
        project_name: str | None = None,
        destination: BinaryIO | None = None,
        progress_callback: Optional[ProgressCallback] = None,
        encoder_factory: Optional[EncoderFactory] = None,
        loader: MediaLoader | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.id = str(uuid4())
        self.snapshot = snapshot
        self.plan = plan
        self.project_name = project_name or snapshot.project_name
        self.destination = destination
        self.progress_callback = progress_callback
        self._encoder_factory = encoder_factory or default_encoder_factory
        self._loader = loader

        self.state = ExportState.IDLE
        self.progress = 0.0
        self.error_message: str | None = None
        self.result: ExportResult | None = None

    def transition(self, target: ExportState) -> None:
        """Move to ``target`` or raise IllegalStateTransitionError."""
        if target not in TRANSITIONS[self.state]:
            raise IllegalStateTransitionError(self.state.value, target.value)
        logger.info(f"[EXPORT] Run {self.id[:8]}: {self.state.value} -> {target.value}")
        self.state = target

    async def _report(self, percent: float) -> None:
        # Never let progress move backwards within a run
        percent = max(self.progress, min(100.0, percent))
        self.progress = percent
        if self.progress_callback is None:
            return
        result = self.progress_callback(percent)
        if inspect.isawaitable(result):
            await result

    async def run(self) -> ExportResult:
        """
        Execute the export.

        Returns:
            ExportResult describing the delivered file

        Raises:
            IllegalStateTransitionError: If the run has already been started
            CodecNegotiationError: If no container/codec pair is available
            EncoderRuntimeError: If the encoder fails while recording
        """
        self.transition(ExportState.PRELOADING)

        plan = self.plan
        work_dir = Path(tempfile.mkdtemp(prefix=f"previz_export_{self.id[:8]}_"))
        loader = self._loader or MediaLoader()
        encoder: Encoder | None = None
        images: ImageCache | None = None
        mixer: AudioMixer | None = None

        logger.info(
            f"[EXPORT] Run {self.id[:8]}: {plan.start:.3f}s-{plan.end:.3f}s "
            f"{plan.width}x{plan.height}@{plan.fps} {plan.format}/{plan.quality}, "
            f"{plan.total_frames} frames"
        )

        try:
            encoder = await self._encoder_factory(plan, work_dir)

            preloader = ResourcePreloader(self.snapshot, loader, work_dir, self._report)
            images = await preloader.preload(plan.start, plan.end)
            mixer = AudioMixer(self.snapshot, loader, work_dir)
            await mixer.load(plan.start, plan.end)

            compositor = FrameCompositor(plan.width, plan.height, self.snapshot.timeline, images)
            compositor.draw(plan.start)
            self.transition(ExportState.FIRST_FRAME_DRAWN)

            await encoder.start()
            self.transition(ExportState.RECORDING)

            await asyncio.sleep(self.settings.export_settle_delay_s)
            recording_start = encoder.audio_sink.current_time
            scheduled = mixer.schedule(
                encoder.audio_sink, recording_start, plan.start, plan.duration
            )
            logger.info(f"[EXPORT] Scheduled {scheduled} audio clips at t={recording_start:.3f}")

            await self._pump_frames(compositor, encoder)

            self.transition(ExportState.DRAINING)
            await asyncio.sleep(self.settings.export_drain_grace_s)
            blob = await encoder.stop()

            self.result = await self._deliver(blob, plan.total_frames)
            await self._report(100.0)
            self.transition(ExportState.COMPLETE)
            logger.info(f"[EXPORT] Run {self.id[:8]} complete: {self.result.filename}")
            return self.result

        except (Exception, asyncio.CancelledError) as e:
            self.error_message = e.message if isinstance(e, PrevizError) else str(e) or type(e).__name__
            logger.error(f"[EXPORT] Run {self.id[:8]} failed in {self.state.value}: {self.error_message}")
            if not self.state.is_terminal:
                self.transition(ExportState.FAILED)
            if encoder is not None:
                await encoder.abort()
            raise

        finally:
            if encoder is not None:
                encoder.audio_sink.stop_all()
                encoder.audio_sink.close()
            if mixer is not None:
                mixer.cache.clear()
            if images is not None:
                images.clear()
            await loader.aclose()
            shutil.rmtree(work_dir, ignore_errors=True)

    async def _pump_frames(self, compositor: FrameCompositor, encoder: Encoder) -> None:
        plan = self.plan
        total = plan.total_frames
        frame_interval = 1 / plan.fps
        pacing = self.settings.export_frame_pacing

        for index in range(total):
            if index > 0:
                # Frame 0 was drawn before recording started
                compositor.draw(plan.frame_time(index))
            await self._report(PRELOAD_PROGRESS_SPAN + index / total * (100 - PRELOAD_PROGRESS_SPAN))
            await encoder.write_frame(compositor.canvas)
            await asyncio.sleep(frame_interval if pacing else 0)

        logger.debug(f"[EXPORT] Wrote {total} frames")

    async def _deliver(self, blob: ExportBlob, frames: int) -> ExportResult:
        filename = export_filename(
            self.project_name, blob.extension, self.settings.export_default_project_name
        )

        path = None
        if self.destination is not None:
            await asyncio.to_thread(self.destination.write, blob.data)
        else:
            output_dir = Path(self.settings.export_output_dir)
            output_dir.mkdir(parents=True, exist_ok=True)
            path = output_dir / filename
            await asyncio.to_thread(path.write_bytes, blob.data)

        return ExportResult(
            filename=filename,
            mime_type=blob.mime_type,
            extension=blob.extension,
            size=blob.size,
            frames=frames,
            path=path,
        )


# ============================================================================
# Service
# ============================================================================


class VideoExportService:
    """Creates export runs and guarantees at most one is in flight."""

    def __init__(
        self,
        settings: Settings | None = None,
        encoder_factory: Optional[EncoderFactory] = None,
        loader_factory: Optional[Callable[[], MediaLoader]] = None,
    ):
        self.settings = settings or get_settings()
        self._encoder_factory = encoder_factory
        self._loader_factory = loader_factory
        self.current_run: ExportRun | None = None
        self.last_run: ExportRun | None = None

    @property
    def is_exporting(self) -> bool:
        return self.current_run is not None

    def begin(
        self,
        snapshot: TimelineSnapshot,
        export_settings: ExportSettings,
        project_name: str | None = None,
        destination: BinaryIO | None = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ExportRun:
        """
        Validate a request and claim the export slot.

        Nothing is allocated before validation passes. The slot is claimed
        synchronously so a second request in the same loop iteration is
        rejected.

        Raises:
            ExportInProgressError: If another run is in flight
            ValidationError: If the request is invalid
            CaptureSurfaceUnavailableError: If FFmpeg is not installed
        """
        if self.current_run is not None:
            raise ExportInProgressError()

        plan = build_export_plan(snapshot, export_settings, self.settings)

        if self._encoder_factory is None and shutil.which(self.settings.ffmpeg_path) is None:
            raise CaptureSurfaceUnavailableError(self.settings.ffmpeg_path)

        run = ExportRun(
            snapshot,
            plan,
            project_name=project_name,
            destination=destination,
            progress_callback=progress_callback,
            encoder_factory=self._encoder_factory,
            loader=self._loader_factory() if self._loader_factory else None,
            settings=self.settings,
        )
        self.current_run = run
        self.last_run = run
        return run

    async def execute(self, run: ExportRun) -> ExportResult:
        """Run a claimed export; the slot is released on every exit path."""
        try:
            return await run.run()
        finally:
            if self.current_run is run:
                self.current_run = None

    async def export_video(
        self,
        snapshot: TimelineSnapshot,
        export_settings: ExportSettings,
        project_name: str | None = None,
        destination: BinaryIO | None = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ExportResult:
        run = self.begin(snapshot, export_settings, project_name, destination, progress_callback)
        return await self.execute(run)
