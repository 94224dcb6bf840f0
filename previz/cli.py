"""Command line entry point: render a snapshot, list presets, or serve the API."""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from pydantic import ValidationError as SchemaValidationError

from previz.config import get_settings
from previz.exceptions import PrevizError
from previz.logging_config import configure_logging
from previz.render.pipeline import VideoExportService
from previz.schemas.export import EXPORT_FORMATS, EXPORT_FPS, EXPORT_QUALITIES, ExportSettings
from previz.schemas.timeline import TimelineSnapshot
from previz.utils.media_info import probe_media
from previz.utils.resolution import default_resolutions
from previz.utils.timecode import frame_to_time


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="previz-export",
        description="Render storyboard timelines to video.",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default from settings)")
    sub = parser.add_subparsers(dest="command")

    render = sub.add_parser("render", help="Export a timeline snapshot to a video file")
    render.add_argument("snapshot", type=Path, help="Timeline snapshot JSON file")
    render.add_argument("--format", choices=EXPORT_FORMATS, default="mp4", help="Container format")
    render.add_argument("--resolution", default="1920x1080", help="<width>x<height>, each <= 1920")
    render.add_argument("--fps", type=int, choices=EXPORT_FPS, default=24, help="Frame rate")
    render.add_argument("--quality", choices=EXPORT_QUALITIES, default="medium", help="Bitrate tier")
    start = render.add_mutually_exclusive_group()
    start.add_argument("--start", type=float, help="Region start in seconds")
    start.add_argument("--start-frame", type=int, help="Region start as a timeline frame number")
    end = render.add_mutually_exclusive_group()
    end.add_argument("--end", type=float, help="Region end in seconds")
    end.add_argument("--end-frame", type=int, help="Region end as a timeline frame number")
    render.add_argument("--output-dir", "-o", type=Path, help="Directory for the exported file")
    render.add_argument("--project-name", help="Name used for the output filename")

    res = sub.add_parser("resolutions", help="List resolution presets for an aspect ratio")
    res.add_argument("--aspect-ratio", default="16:9", help='"16:9", "W:H" or "none"')

    serve = sub.add_parser("serve", help="Run the export API")
    serve.add_argument("--port", type=int, default=8000, help="Port to listen on")
    serve.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to")

    return parser


def _region_bound(seconds: float | None, frame: int | None, frame_rate: int) -> float | None:
    if frame is not None:
        return frame_to_time(frame, frame_rate)
    return seconds


def _render(args: argparse.Namespace) -> int:
    try:
        snapshot = TimelineSnapshot.model_validate(json.loads(args.snapshot.read_text()))
    except (OSError, json.JSONDecodeError, SchemaValidationError) as e:
        print(f"Error: cannot read snapshot {args.snapshot}: {e}", file=sys.stderr)
        return 1

    export_settings = ExportSettings(
        format=args.format,
        resolution=args.resolution,
        fps=args.fps,
        quality=args.quality,
        start_time=_region_bound(args.start, args.start_frame, snapshot.frame_rate),
        end_time=_region_bound(args.end, args.end_frame, snapshot.frame_rate),
    )

    settings = get_settings()
    if args.output_dir:
        settings = settings.model_copy(update={"export_output_dir": str(args.output_dir)})
    service = VideoExportService(settings=settings)

    last_shown = -1

    def on_progress(percent: float) -> None:
        nonlocal last_shown
        if int(percent) > last_shown:
            last_shown = int(percent)
            stage = "Loading media" if percent < 50 else "Rendering frames"
            print(f"  [{percent / 100:4.0%}] {stage}")

    try:
        result = asyncio.run(
            service.export_video(snapshot, export_settings, args.project_name, progress_callback=on_progress)
        )
    except PrevizError as e:
        print(f"Export failed: {e.message}", file=sys.stderr)
        return 1

    print()
    print(f"Done! Output: {result.path}")
    print(f"  Type: {result.mime_type} ({result.size} bytes, {result.frames} frames)")
    try:
        info = probe_media(str(result.path))
    except (RuntimeError, OSError) as e:
        print(f"  Duration: unknown ({e})")
    else:
        if info.duration_s is not None:
            print(f"  Duration: {info.duration_s:.3f}s")
            if not info.covers(result.frames / args.fps, args.fps):
                print("  Warning: duration differs from the rendered frame count", file=sys.stderr)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(args.log_level)

    if args.command == "resolutions":
        for option in default_resolutions(args.aspect_ratio):
            print(f"{option.value:>10}  {option.label}")
        return

    if args.command == "serve":
        import uvicorn

        uvicorn.run("previz.main:app", host=args.host, port=args.port)
        return

    sys.exit(_render(args))


if __name__ == "__main__":
    main()
