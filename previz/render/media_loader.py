"""
Source fetching for export resources.

Clip sources arrive as whatever the editor stored: local paths, ``file://``
URLs, inline ``data:`` URLs (storyboard images are usually kept this way) or
remote ``http(s)://`` URLs. Everything is turned into bytes, or into a local
file when ffmpeg has to read it.
"""

import asyncio
import base64
import binascii
import logging
from pathlib import Path
from urllib.parse import unquote, unquote_to_bytes, urlparse

import httpx

from previz.config import get_settings
from previz.exceptions import MediaLoadError

logger = logging.getLogger(__name__)


class MediaLoader:
    """Resolves clip source references to bytes or local files."""

    def __init__(self, client: httpx.AsyncClient | None = None, timeout: float | None = None):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout or get_settings().media_fetch_timeout_s

    async def __aenter__(self) -> "MediaLoader":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def fetch(self, source: str) -> bytes:
        """Load the raw bytes behind a source reference.

        Raises:
            MediaLoadError: If the source cannot be read
        """
        if source.startswith("data:"):
            return decode_data_url(source)

        scheme = urlparse(source).scheme
        if scheme in ("http", "https"):
            try:
                response = await self._http().get(source)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise MediaLoadError(source, str(e)) from e
            return response.content

        if scheme == "blob":
            raise MediaLoadError(source, "blob URLs are only valid inside the editor session")

        path = local_path(source)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise MediaLoadError(source, str(e)) from e

    async def materialize(self, source: str, work_dir: Path, name: str) -> Path:
        """Return a local file for the source, writing fetched bytes under work_dir."""
        if is_local_source(source):
            path = local_path(source)
            if not path.exists():
                raise MediaLoadError(source, "file not found")
            return path

        return await self.store(source, await self.fetch(source), work_dir, name)

    async def store(self, source: str, data: bytes, work_dir: Path, name: str) -> Path:
        """Like ``materialize`` for bytes already fetched from ``source``."""
        if is_local_source(source):
            return local_path(source)
        target = work_dir / name
        await asyncio.to_thread(target.write_bytes, data)
        return target


def is_local_source(source: str) -> bool:
    return not source.startswith("data:") and urlparse(source).scheme in ("", "file")


def local_path(source: str) -> Path:
    """Map a plain path or ``file://`` URL to a Path."""
    parsed = urlparse(source)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(source)


def decode_data_url(source: str) -> bytes:
    """Decode an RFC 2397 ``data:`` URL."""
    header, sep, payload = source.partition(",")
    if not sep:
        raise MediaLoadError(source, "malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=False)
        except (binascii.Error, ValueError) as e:
            raise MediaLoadError(source, str(e)) from e
    return unquote_to_bytes(payload)
