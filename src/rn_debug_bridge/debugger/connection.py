"""Connection manager - owns the packager control socket and the active debuggee lifetime."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import Awaitable, Callable, Coroutine
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any

import structlog
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from rn_debug_bridge.debugger.bootstrap import patch_debugger_worker
from rn_debug_bridge.debugger.sandbox_worker import SandboxWorker
from rn_debug_bridge.debugger.script_importer import DEBUGGER_WORKER_FILENAME, ScriptImporter
from rn_debug_bridge.errors import BridgeError, another_debugger_error
from rn_debug_bridge.files.writer import FileWriter
from rn_debug_bridge.models import AttachRequest, WireMessage, WorkerOutput
from rn_debug_bridge.packager import PackagerStatus

logger = structlog.get_logger()

RECONNECT_DELAY_SECS = 0.1
ANOTHER_DEBUGGER_MARKER = "another debugger"
PREPARE_JS_RUNTIME = "prepareJSRuntime"

SocketFactory = Callable[[str], Awaitable[Any]]
WorkerFactory = Callable[..., SandboxWorker]
OutputListener = Callable[[WorkerOutput], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ConnectionManager:
    """Keeps one socket to the debugger proxy and routes its traffic to one debuggee.

    Each ``prepareJSRuntime`` starts a new lifetime: the previous worker is
    stopped before the new one is spawned, and the proxy gets its reply once
    the new worker reports readiness.
    """

    def __init__(
        self,
        attach: AttachRequest,
        *,
        socket_factory: SocketFactory | None = None,
        packager: PackagerStatus | None = None,
        writer: FileWriter | None = None,
        script_importer: ScriptImporter | None = None,
        worker_factory: WorkerFactory = SandboxWorker,
        output_listener: OutputListener | None = None,
    ) -> None:
        self._attach = attach
        self._connect = socket_factory or partial(connect, max_size=None)
        self._packager = packager or PackagerStatus()
        self._writer = writer or FileWriter()
        self.script_importer = script_importer or ScriptImporter(
            attach.address,
            attach.port,
            attach.storage_path,
            bundle_suffix=attach.bundle_suffix,
            writer=self._writer,
            packager=self._packager,
        )
        self._worker_factory = worker_factory
        self._output_listener = output_listener
        self._state = ConnectionState.DISCONNECTED
        self._socket: Any = None
        self._socket_task: asyncio.Task[None] | None = None
        self._worker: SandboxWorker | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self._stopped = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def active_worker(self) -> SandboxWorker | None:
        return self._worker

    @property
    def debugger_proxy_url(self) -> str:
        return f"ws://{self._attach.address}:{self._attach.port}/debugger-proxy?role=debugger"

    async def start(self) -> None:
        """Connect to the debugger proxy.

        Raises:
            BridgeError: if the packager is not reachable on the configured port
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug("connection_start_ignored", state=self._state.value)
            return

        self._cancel_reconnect()
        self._stopped = False
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._packager.ensure_running(self._attach.address, self._attach.port)
            await self.download_and_patch_debugger_worker()
        except BaseException:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        if self._stopped:
            return

        url = self.debugger_proxy_url
        logger.info("connection_opening", url=url)
        try:
            ws = await self._connect(url)
        except (OSError, TimeoutError, WebSocketException) as exc:
            self._on_error(exc)
            self._on_close("")
            return

        if self._stopped:
            await ws.close()
            return

        self._socket = ws
        self._on_open()
        self._socket_task = asyncio.create_task(self._run_socket(ws))

    async def stop(self) -> None:
        """Cancel any reconnect, stop the debuggee and close the socket. Safe to call repeatedly."""
        self._stopped = True
        self._cancel_reconnect()

        worker, self._worker = self._worker, None
        if worker is not None:
            worker.stop()

        task, self._socket_task = self._socket_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        ws, self._socket = self._socket, None
        if ws is not None:
            with contextlib.suppress(OSError, WebSocketException):
                await ws.close()

        if self._state != ConnectionState.DISCONNECTED:
            logger.info("connection_stopped")
            self._set_state(ConnectionState.DISCONNECTED)

    async def download_and_patch_debugger_worker(self) -> Path:
        """Store the packager's debugger worker, wrapped with the sandbox bootstrap."""
        content = await self.script_importer.download_debugger_worker()
        path = self._attach.storage_path / DEBUGGER_WORKER_FILENAME
        await self._writer.write_file(path, patch_debugger_worker(content))
        logger.info("debugger_worker_prepared", path=str(path))
        return path

    async def _run_socket(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._on_message(raw)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as exc:
            logger.debug("connection_closed_abnormally", code=exc.rcvd.code if exc.rcvd else None)
        except Exception as exc:
            self._on_error(exc)

        if ws is self._socket:
            self._on_close(getattr(ws, "close_reason", None) or "")

    # Event dispatchers

    def _on_open(self) -> None:
        logger.info("connection_open", url=self.debugger_proxy_url)
        self._set_state(ConnectionState.CONNECTED)

    def _on_error(self, exc: BaseException) -> None:
        logger.warning("connection_error", error=str(exc), error_type=type(exc).__name__)

    def _on_close(self, reason: str) -> None:
        self._socket = None
        if self._stopped:
            return

        if ANOTHER_DEBUGGER_MARKER in reason.lower():
            error = another_debugger_error(reason)
            logger.error("connection_refused", reason=reason)
            self._set_state(ConnectionState.DISCONNECTED)
            self._emit_output(WorkerOutput(category="stderr", text=error.message))
            return

        logger.info("connection_closed", reason=reason, reconnect_in=RECONNECT_DELAY_SECS)
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            RECONNECT_DELAY_SECS,
            self._reconnect,
        )

    def _on_message(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("proxy_message_invalid_json", raw=raw[:200])
            return
        if not isinstance(message, dict):
            logger.warning("proxy_message_not_object", raw=raw[:200])
            return

        if message.get("method") == PREPARE_JS_RUNTIME:
            self._prepare_js_runtime(message)
            return

        worker = self._worker
        if worker is None:
            logger.warning("proxy_message_dropped", method=message.get("method"))
            return
        self._track(worker.post_message(message))

    # Lifetimes

    def _prepare_js_runtime(self, message: WireMessage) -> None:
        previous = self._worker
        if previous is not None:
            logger.info("worker_superseded")
            previous.stop()

        worker = self._worker_factory(
            self._attach.address,
            self._attach.port,
            self._attach.storage_path,
            self._attach.bundle_suffix,
            self._post_reply,
            node_path=self._attach.node_path,
            inspect_port=self._attach.inspect_port,
        )
        self._worker = worker
        self._track(self._reply_when_started(worker, worker.start(), message.get("id")))

    async def _reply_when_started(
        self,
        worker: SandboxWorker,
        starting: Awaitable[int | None],
        message_id: Any,
    ) -> None:
        try:
            debug_port = await starting
        except BridgeError as exc:
            if self._stopped or self._worker is not worker:
                logger.debug("worker_start_abandoned", error=str(exc))
                return
            logger.error("worker_start_failed", error=str(exc))
            self._worker = None
            worker.stop()
            self._emit_output(WorkerOutput(category="stderr", text=exc.message))
            return

        logger.info("js_runtime_prepared", reply_id=message_id, debug_port=debug_port)
        await self._send_json({"replyID": message_id})

    async def _post_reply(self, message: Any) -> None:
        if isinstance(message, WorkerOutput):
            self._emit_output(message)
            return
        await self._send_json(message)

    async def _send_json(self, payload: Any) -> None:
        ws = self._socket
        if ws is None:
            logger.warning("proxy_reply_dropped", reason="not connected")
            return
        try:
            await ws.send(json.dumps(payload, separators=(",", ":")))
        except ConnectionClosed as exc:
            logger.warning("proxy_reply_dropped", reason=str(exc))

    def _emit_output(self, output: WorkerOutput) -> None:
        if self._output_listener is not None:
            self._output_listener(output)

    # Reconnect

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        self._track(self._restart())

    async def _restart(self) -> None:
        try:
            await self.start()
        except BridgeError as exc:
            logger.error("reconnect_failed", error=str(exc))
            self._emit_output(WorkerOutput(category="stderr", text=exc.message))

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # Helpers

    def _set_state(self, state: ConnectionState) -> None:
        if state != self._state:
            logger.debug("connection_state", old=self._state.value, new=state.value)
            self._state = state

    def _track(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, BridgeError):
            logger.error("message_relay_failed", error=str(exc))
            self._emit_output(WorkerOutput(category="stderr", text=exc.message))
        else:
            logger.error("message_relay_crashed", error=str(exc), error_type=type(exc).__name__)
