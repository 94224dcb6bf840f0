"""Export API endpoints.

Exports run as background asyncio tasks; clients poll ``/status`` or watch
the run's WebSocket for progress, then fetch the file from ``/download``.
"""

import asyncio
import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.responses import FileResponse

from previz.api.websocket import progress_notifier, websocket_manager
from previz.exceptions import PrevizError
from previz.render.pipeline import ExportRun, ExportState, VideoExportService
from previz.schemas.export import ExportRequest, ExportStatusResponse, ResolutionOption
from previz.utils.resolution import default_resolutions

router = APIRouter()
logger = logging.getLogger(__name__)

_export_service: VideoExportService | None = None
# Strong references to running export tasks
_background_tasks: set[asyncio.Task] = set()


def get_export_service() -> VideoExportService:
    global _export_service
    if _export_service is None:
        _export_service = VideoExportService()
    return _export_service


def _status_response(run: ExportRun) -> ExportStatusResponse:
    result = run.result
    return ExportStatusResponse(
        run_id=run.id,
        state=run.state.value,
        progress=round(run.progress, 2),
        error_message=run.error_message,
        filename=result.filename if result else None,
        mime_type=result.mime_type if result else None,
        file_size=result.size if result else None,
    )


async def _run_export(service: VideoExportService, run: ExportRun) -> None:
    """Background task body: run the export and broadcast its outcome."""
    try:
        result = await service.execute(run)
    except PrevizError as e:
        await progress_notifier.notify_error(run.id, e.message, e.code)
        return
    except Exception as e:
        logger.exception(f"[EXPORT] Unexpected failure in run {run.id}")
        await progress_notifier.notify_error(run.id, str(e), "INTERNAL_ERROR")
        return
    await progress_notifier.notify_complete(run.id, result.filename, result.mime_type, result.size)


@router.post(
    "/export",
    response_model=ExportStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_export(
    request: ExportRequest,
    service: VideoExportService = Depends(get_export_service),
) -> ExportStatusResponse:
    """
    Start an export of a timeline snapshot.

    Returns immediately with the new run; 409 while another export is running.
    """
    run = service.begin(request.snapshot, request.settings, request.project_name)

    async def on_progress(percent: float) -> None:
        await progress_notifier.notify_progress(run.id, percent, run.state.value)

    run.progress_callback = on_progress

    task = asyncio.create_task(_run_export(service, run))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    logger.info(f"[EXPORT] Accepted run {run.id}")
    return _status_response(run)


@router.get("/export/status", response_model=ExportStatusResponse)
async def get_export_status(
    service: VideoExportService = Depends(get_export_service),
) -> ExportStatusResponse:
    """Status of the current export, or of the last one when idle."""
    run = service.current_run or service.last_run
    if run is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No export has been started")
    return _status_response(run)


@router.get("/export/download")
async def download_export(
    service: VideoExportService = Depends(get_export_service),
) -> FileResponse:
    run = service.last_run
    if run is None or run.state != ExportState.COMPLETE or run.result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No completed export")

    path = run.result.path
    if path is None or not Path(path).exists():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Export file not found")

    return FileResponse(path, media_type=run.result.mime_type, filename=run.result.filename)


@router.get("/export/resolutions", response_model=list[ResolutionOption])
async def list_resolutions(
    aspect_ratio: str | None = "16:9",
    custom_width: float | None = None,
    custom_height: float | None = None,
) -> list[ResolutionOption]:
    """Full HD / HD / SD presets for a project aspect ratio."""
    return default_resolutions(aspect_ratio, custom_width, custom_height)


@router.websocket("/export/ws/{run_id}")
async def export_progress_ws(websocket: WebSocket, run_id: str) -> None:
    """Stream progress messages for one export run until the client leaves."""
    await websocket_manager.connect(websocket, run_id)
    try:
        while True:
            # Client messages are ignored; receiving detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        websocket_manager.disconnect(websocket, run_id)
