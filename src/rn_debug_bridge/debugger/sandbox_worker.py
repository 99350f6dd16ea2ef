"""One debuggee lifetime: a node process running the wrapped debugger worker."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import socket
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import structlog

from rn_debug_bridge.debugger.script_importer import DEBUGGER_WORKER_FILENAME, ScriptImporter
from rn_debug_bridge.errors import (
    BridgeError,
    worker_exited_error,
    worker_not_running_error,
    worker_start_timeout_error,
)
from rn_debug_bridge.models import WireMessage, WorkerOutput

logger = structlog.get_logger()

PostReply = Callable[[Any], Awaitable[None]]

_READY_TIMEOUT_SECS = 30.0
# RN bridge payloads routinely exceed asyncio's 64 KiB line default.
_STREAM_LIMIT = 16 * 1024 * 1024


class SandboxWorker:
    """Spawns the debuggee and relays messages over node's IPC channel (JSON lines).

    The channel is a socketpair handed to the child through NODE_CHANNEL_FD, so
    stdout/stderr stay free for the app's own console output.
    """

    def __init__(
        self,
        packager_address: str,
        packager_port: int,
        storage_path: Path,
        bundle_suffix: str,
        post_reply: PostReply,
        *,
        node_path: str = "node",
        inspect_port: int = 0,
        script_importer: ScriptImporter | None = None,
        ready_timeout: float = _READY_TIMEOUT_SECS,
    ) -> None:
        self._packager_address = packager_address
        self._packager_port = packager_port
        self._storage_path = storage_path
        self._post_reply = post_reply
        self._node_path = node_path
        self._inspect_port = inspect_port
        self._ready_timeout = ready_timeout
        self.script_importer = script_importer or ScriptImporter(
            packager_address,
            packager_port,
            storage_path,
            bundle_suffix=bundle_suffix,
        )
        self._process: asyncio.subprocess.Process | None = None
        self._channel_writer: asyncio.StreamWriter | None = None
        self._reader_tasks: list[asyncio.Task[None]] = []
        self._exit_task: asyncio.Task[None] | None = None
        self._loaded: asyncio.Future[int | None] | None = None
        self._post_lock = asyncio.Lock()
        self._debug_port: int | None = None
        self._stopped = False

    @property
    def is_alive(self) -> bool:
        """Check if the debuggee process is running."""
        return self._process is not None and self._process.returncode is None

    @property
    def debug_port(self) -> int | None:
        return self._debug_port

    @property
    def process(self) -> asyncio.subprocess.Process | None:
        return self._process

    def _build_command(self, script_path: Path) -> list[str]:
        return [self._node_path, f"--inspect={self._inspect_port}", str(script_path)]

    def _loaded_future(self) -> asyncio.Future[int | None]:
        if self._loaded is None:
            self._loaded = asyncio.get_running_loop().create_future()
            # Unawaited failures must not log "exception was never retrieved".
            self._loaded.add_done_callback(lambda fut: fut.cancelled() or fut.exception())
        return self._loaded

    async def start(self) -> int | None:
        """Spawn the debuggee and wait for its readiness handshake.

        Returns:
            The inspector port the debuggee reported

        Raises:
            BridgeError: if the process cannot be spawned, exits or is stopped
                before it reports readiness, or does not report in time
        """
        if self._stopped:
            raise worker_not_running_error("worker was stopped")
        if self._process is not None:
            return await asyncio.shield(self._loaded_future())

        loaded = self._loaded_future()
        command = self._build_command(self._storage_path / DEBUGGER_WORKER_FILENAME)
        parent_sock, child_sock = socket.socketpair()
        env = {
            **os.environ,
            "NODE_CHANNEL_FD": str(child_sock.fileno()),
            "NODE_CHANNEL_SERIALIZATION_MODE": "json",
        }
        try:
            self._process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                pass_fds=(child_sock.fileno(),),
                env=env,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            parent_sock.close()
            raise worker_not_running_error(f"cannot spawn {command[0]}: {exc}") from None
        finally:
            child_sock.close()

        reader, self._channel_writer = await asyncio.open_unix_connection(
            sock=parent_sock,
            limit=_STREAM_LIMIT,
        )
        logger.info("worker_spawned", pid=self._process.pid, command=command)

        assert self._process.stdout is not None and self._process.stderr is not None
        self._reader_tasks = [
            asyncio.create_task(self._read_channel_loop(reader)),
            asyncio.create_task(self._read_output_loop(self._process.stdout, "stdout")),
            asyncio.create_task(self._read_output_loop(self._process.stderr, "stderr")),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(self._process))

        try:
            self._debug_port = await asyncio.wait_for(
                asyncio.shield(loaded),
                timeout=self._ready_timeout,
            )
        except TimeoutError:
            self.stop()
            raise worker_start_timeout_error(self._ready_timeout) from None
        except BridgeError:
            self.stop()
            raise

        logger.info("worker_ready", pid=self._process.pid, debug_port=self._debug_port)
        return self._debug_port

    def stop(self) -> None:
        """Kill the debuggee and release the message channel. Safe to call repeatedly."""
        self._stopped = True
        if self._loaded is not None and not self._loaded.done():
            self._loaded.set_exception(worker_not_running_error("worker stopped"))

        for task in self._reader_tasks:
            if not task.done():
                task.cancel()

        if self._channel_writer is not None:
            self._channel_writer.close()
            self._channel_writer = None

        if self.is_alive and self._process is not None:
            logger.info("worker_stopping", pid=self._process.pid)
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()

    async def post_message(self, message: WireMessage) -> None:
        """Deliver a wire message to the debuggee, in arrival order.

        ``executeApplicationScript`` messages have their bundle downloaded first
        and their ``url`` replaced with the local file path.
        """
        async with self._post_lock:
            if self._stopped:
                raise worker_not_running_error("worker stopped")
            await asyncio.shield(self._loaded_future())

            if message.get("method") == "executeApplicationScript":
                script_url = self._packager_script_url(str(message["url"]))
                local_path = await self.script_importer.download_app_script(script_url)
                message = {**message, "url": str(local_path)}

            await self._send({"data": message})

    def _packager_script_url(self, url: str) -> str:
        """Send bundle requests for localhost to wherever the packager really is."""
        parts = urlsplit(url)
        if parts.hostname != "localhost":
            return url
        netloc = f"{self._packager_address}:{self._packager_port}"
        return urlunsplit(parts._replace(netloc=netloc))

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._channel_writer is None:
            raise worker_not_running_error("message channel closed")
        self._channel_writer.write(json.dumps(payload).encode() + b"\n")
        await self._channel_writer.drain()

    async def _read_channel_loop(self, reader: asyncio.StreamReader) -> None:
        """Read messages the debuggee posts over the IPC channel."""
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    break  # EOF

                line = raw.decode().strip()
                if not line:
                    continue

                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("worker_channel_invalid_json", line=line[:200])
                    continue

                if isinstance(message, dict):
                    # node's own channel bookkeeping
                    if str(message.get("cmd", "")).startswith("NODE_"):
                        continue
                    if message.get("workerLoaded"):
                        loaded = self._loaded_future()
                        if not loaded.done():
                            loaded.set_result(message.get("debugPort"))
                        continue

                await self._reply(message)

        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("worker_channel_loop_error")

    async def _read_output_loop(self, stream: asyncio.StreamReader, category: str) -> None:
        """Forward debuggee stdout/stderr lines to the reply sink."""
        try:
            while True:
                raw = await stream.readline()
                if not raw:
                    break
                text = raw.decode(errors="replace").rstrip("\r\n")
                logger.debug("worker_output", category=category, text=text)
                await self._reply(WorkerOutput(category=category, text=text))
        except asyncio.CancelledError:
            return
        except Exception:
            logger.exception("worker_output_loop_error", category=category)

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        loaded = self._loaded_future()
        if not loaded.done():
            loaded.set_exception(worker_exited_error(returncode))

        if self._stopped:
            logger.debug("worker_exited", pid=process.pid, returncode=returncode)
            return

        logger.warning("worker_exited_unexpectedly", pid=process.pid, returncode=returncode)
        await self._reply(
            WorkerOutput(category="stderr", text=f"Debuggee process exited with code {returncode}")
        )

    async def _reply(self, message: Any) -> None:
        try:
            await self._post_reply(message)
        except Exception:
            logger.exception("worker_reply_failed")
