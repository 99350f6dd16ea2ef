"""Bundle and debugger worker downloads with ETag-validated local caching."""

from __future__ import annotations

import asyncio
import posixpath
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import structlog

from rn_debug_bridge.debugger import sourcemap
from rn_debug_bridge.debugger.http_fetcher import HttpFetcher
from rn_debug_bridge.errors import packager_not_running_error
from rn_debug_bridge.files.writer import FileWriter
from rn_debug_bridge.models import CachedScript
from rn_debug_bridge.packager import PackagerStatus, host_for

logger = structlog.get_logger()

DEBUGGER_WORKER_FILE_BASENAME = "debuggerWorker"
DEBUGGER_WORKER_FILENAME = f"{DEBUGGER_WORKER_FILE_BASENAME}.js"


class ScriptImporter:
    """Keeps one bundle (and its sourcemap) mirrored into a local storage directory."""

    def __init__(
        self,
        packager_address: str,
        packager_port: int,
        storage_path: Path,
        *,
        bundle_suffix: str = "",
        fetcher: HttpFetcher | None = None,
        writer: FileWriter | None = None,
        packager: PackagerStatus | None = None,
    ) -> None:
        self._packager_address = packager_address
        self._packager_port = packager_port
        self._storage_path = storage_path
        # Not applied to local file names, which are the bundle URL basename.
        self._bundle_suffix = bundle_suffix
        self._fetcher = fetcher or HttpFetcher()
        self._writer = writer or FileWriter()
        self._packager = packager or PackagerStatus(self._fetcher)
        self._app_script_etag: str | None = None
        self._background: set[asyncio.Task[None]] = set()
        self.cached: CachedScript | None = None

    @property
    def storage_path(self) -> Path:
        return self._storage_path

    async def download_app_script(self, script_url: str) -> Path:
        """Mirror the bundle at ``script_url`` locally and return the local path.

        A 304 for the remembered ETag leaves the existing file untouched.
        """
        if urlsplit(script_url).hostname == "localhost":
            script_url = self._override_packager_port(script_url)

        script_path = self.local_script_path(script_url)
        if not self._writer.exists(script_path):
            # Without the file a 304 would be useless; force the body to be sent.
            self._app_script_etag = None

        response = await self._fetcher.request_with_etag(script_url, self._app_script_etag)

        if response.code == 304:
            self._app_script_etag = response.etag or self._app_script_etag
            logger.debug("script_not_modified", url=script_url, path=str(script_path))
            self.cached = CachedScript(script_url, script_path, self._app_script_etag)
            return script_path

        self._app_script_etag = response.etag

        script_body = response.body
        source_map_url = sourcemap.get_source_map_url(script_url, script_body)
        if source_map_url:
            script_body = sourcemap.update_script_paths(script_body, source_map_url)
            self._spawn_source_map_write(source_map_url, script_path.name)

        await self._writer.write_file(script_path, script_body)
        self.cached = CachedScript(script_url, script_path, response.etag)
        logger.info("script_downloaded", url=script_url, path=str(script_path))
        return script_path

    async def download_debugger_worker(self) -> str:
        """Fetch the raw debugger worker script from the packager root."""
        host = host_for(self._packager_address, self._packager_port)
        if not await self._packager.is_running(host):
            raise packager_not_running_error(self._packager_port)

        worker_url = f"http://{host}/{DEBUGGER_WORKER_FILENAME}"
        logger.info("debugger_worker_download", url=worker_url)
        return await self._fetcher.request(worker_url, expect_ok=True)

    def local_script_path(self, script_url: str) -> Path:
        return self._storage_path / posixpath.basename(urlsplit(script_url).path)

    async def wait_background(self) -> None:
        """Wait for sourcemap writes still in flight."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _spawn_source_map_write(self, source_map_url: str, script_file_name: str) -> None:
        task = asyncio.create_task(self._write_app_source_map(source_map_url, script_file_name))
        self._background.add(task)
        task.add_done_callback(self._on_source_map_written)

    def _on_source_map_written(self, task: asyncio.Task[None]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("source_map_write_failed", error=str(exc))

    async def _write_app_source_map(self, source_map_url: str, script_file_name: str) -> None:
        body = await self._fetcher.request(source_map_url, expect_ok=True)
        local_path = self._storage_path / posixpath.basename(urlsplit(source_map_url).path)
        updated = sourcemap.update_source_map_file(body, script_file_name)
        await self._writer.write_file(local_path, updated)
        logger.debug("source_map_written", url=source_map_url, path=str(local_path))

    def _override_packager_port(self, url: str) -> str:
        parts = urlsplit(url)
        return urlunsplit(parts._replace(netloc=f"{parts.hostname}:{self._packager_port}"))
