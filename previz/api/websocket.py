"""WebSocket support for real-time export progress notifications.

This module provides:
- WebSocketManager: WebSocket connections grouped by export run
- ExportProgressNotifier: progress / complete / error broadcasts for a run
- Message helpers with a fixed JSON shape per message type
"""

import logging
from typing import Any, Optional

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class WebSocketManager:
    """Tracks the clients watching each export run."""

    def __init__(self):
        # run_id -> connected websockets
        self._connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, run_id: str) -> None:
        self._connections.setdefault(run_id, []).append(websocket)
        await websocket.accept()

    def disconnect(self, websocket: WebSocket, run_id: str) -> None:
        clients = self._connections.get(run_id)
        if clients is None:
            return
        if websocket in clients:
            clients.remove(websocket)
        if not clients:
            del self._connections[run_id]

    async def broadcast(self, run_id: str, message: dict[str, Any]) -> None:
        """Send a message to every client of a run, dropping closed sockets."""
        closed = []
        for websocket in list(self._connections.get(run_id, [])):
            try:
                await websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"[EXPORT WS] Dropping client of {run_id}: {e}")
                closed.append(websocket)

        for websocket in closed:
            self.disconnect(websocket, run_id)

    def get_connection_count(self, run_id: str) -> int:
        return len(self._connections.get(run_id, []))


class ExportProgressNotifier:
    """High-level API for export notifications."""

    def __init__(self, manager: WebSocketManager):
        self._manager = manager

    async def notify_progress(self, run_id: str, percent: float, state: str) -> None:
        await self._manager.broadcast(run_id, create_progress_message(run_id, state, percent))

    async def notify_complete(
        self,
        run_id: str,
        filename: str,
        mime_type: str,
        file_size_bytes: int = 0,
    ) -> None:
        message = create_complete_message(run_id, filename, mime_type, file_size_bytes)
        await self._manager.broadcast(run_id, message)

    async def notify_error(
        self,
        run_id: str,
        error_message: str,
        error_code: Optional[str] = None,
    ) -> None:
        message = create_error_message(run_id, error_message, error_code)
        await self._manager.broadcast(run_id, message)


def create_progress_message(run_id: str, state: str, percent: float) -> dict[str, Any]:
    return {
        "type": "progress",
        "run_id": run_id,
        "state": state,
        "percent": round(percent, 2),
    }


def create_complete_message(
    run_id: str,
    filename: str,
    mime_type: str,
    file_size_bytes: int = 0,
) -> dict[str, Any]:
    return {
        "type": "complete",
        "run_id": run_id,
        "state": "complete",
        "percent": 100.0,
        "filename": filename,
        "mime_type": mime_type,
        "file_size_bytes": file_size_bytes,
    }


def create_error_message(
    run_id: str,
    error_message: str,
    error_code: Optional[str] = None,
) -> dict[str, Any]:
    return {
        "type": "error",
        "run_id": run_id,
        "state": "failed",
        "error_message": error_message,
        "error_code": error_code,
    }


# Global WebSocket manager instance
websocket_manager = WebSocketManager()
progress_notifier = ExportProgressNotifier(websocket_manager)
