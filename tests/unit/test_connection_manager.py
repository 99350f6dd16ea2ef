"""Tests for ConnectionManager."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from rn_debug_bridge.debugger.connection import (
    RECONNECT_DELAY_SECS,
    ConnectionManager,
    ConnectionState,
)
from rn_debug_bridge.errors import BridgeError, packager_not_running_error, worker_exited_error
from rn_debug_bridge.models import AttachRequest, WorkerOutput


async def _settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class _Harness:
    def __init__(
        self,
        attach_request: AttachRequest,
        socket_factory: AsyncMock,
        sockets: list[Any],
        packager: MagicMock,
        writer: MagicMock,
        script_importer: MagicMock,
        make_worker: Callable[[], MagicMock],
    ) -> None:
        self.sockets = sockets
        self.socket_factory = socket_factory
        self.packager = packager
        self.writer = writer
        self.workers: list[MagicMock] = []
        self.outputs: list[WorkerOutput] = []
        self._make_worker = make_worker
        self.worker_factory = MagicMock(side_effect=self._create_worker)
        self.manager = ConnectionManager(
            attach_request,
            socket_factory=socket_factory,
            packager=packager,
            writer=writer,
            script_importer=script_importer,
            worker_factory=self.worker_factory,
            output_listener=self.outputs.append,
        )

    def _create_worker(self, *args: Any, **kwargs: Any) -> MagicMock:
        worker = self._make_worker()
        self.workers.append(worker)
        return worker

    @property
    def ws(self) -> Any:
        return self.sockets[-1]


@pytest_asyncio.fixture
async def harness(
    attach_request: AttachRequest,
    socket_factory: AsyncMock,
    sockets: list[Any],
    packager: MagicMock,
    writer: MagicMock,
    script_importer: MagicMock,
    make_worker: Callable[[], MagicMock],
) -> AsyncIterator[_Harness]:
    h = _Harness(
        attach_request, socket_factory, sockets, packager, writer, script_importer, make_worker
    )
    yield h
    await h.manager.stop()


class TestConnectionStart:
    """Tests for connecting to the debugger proxy."""

    @pytest.mark.asyncio
    async def test_connects_to_debugger_proxy_endpoint(self, harness: _Harness) -> None:
        await harness.manager.start()

        harness.socket_factory.assert_awaited_once()
        url = harness.socket_factory.call_args[0][0]
        assert re.fullmatch(r"ws://[^:]*:[0-9]*/debugger-proxy\?role=debugger", url)
        assert url == "ws://localhost:8081/debugger-proxy?role=debugger"
        assert harness.manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_writes_patched_debugger_worker_before_connecting(
        self, harness: _Harness, attach_request: AttachRequest
    ) -> None:
        await harness.manager.start()

        harness.writer.write_file.assert_awaited_once()
        path, content = harness.writer.write_file.call_args[0]
        assert path == attach_request.storage_path / "debuggerWorker.js"
        assert "// packager debugger worker" in content
        assert "__debug__" in content
        assert "workerLoaded" in content

    @pytest.mark.asyncio
    async def test_start_is_idempotent_while_connected(self, harness: _Harness) -> None:
        await harness.manager.start()
        await harness.manager.start()

        assert harness.socket_factory.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_start_opens_one_socket(self, harness: _Harness) -> None:
        await asyncio.gather(harness.manager.start(), harness.manager.start())

        assert harness.socket_factory.await_count == 1

    @pytest.mark.asyncio
    async def test_packager_not_running_rejects_without_socket(self, harness: _Harness) -> None:
        harness.packager.ensure_running.side_effect = packager_not_running_error(8081)

        with pytest.raises(BridgeError) as exc_info:
            await harness.manager.start()

        assert "8081" in exc_info.value.message
        assert exc_info.value.code == "ERR_PACKAGER_NOT_RUNNING"
        harness.socket_factory.assert_not_called()
        assert harness.manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_failure_schedules_reconnect(self, harness: _Harness) -> None:
        harness.socket_factory.side_effect = [ConnectionRefusedError("refused"), None]

        await harness.manager.start()

        assert harness.manager.state == ConnectionState.RECONNECTING


class TestMessageRouting:
    """Tests for routing proxy messages to the active worker."""

    @pytest.mark.asyncio
    async def test_prepare_js_runtime_replies_after_worker_started(
        self, harness: _Harness
    ) -> None:
        await harness.manager.start()
        gate = asyncio.Event()

        async def _start() -> int:
            await gate.wait()
            return 9229

        harness.worker_factory.side_effect = None
        worker = harness._make_worker()
        worker.start.side_effect = _start
        harness.worker_factory.return_value = worker

        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 1}))
        await _settle()

        worker.start.assert_called_once()
        assert harness.ws.sent == [], "reply sent before the worker was ready"

        gate.set()
        await _settle()

        assert harness.ws.sent == ['{"replyID":1}']

    @pytest.mark.asyncio
    async def test_worker_built_from_attach_arguments(
        self, harness: _Harness, attach_request: AttachRequest
    ) -> None:
        await harness.manager.start()

        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 7}))
        await _settle()

        args, kwargs = harness.worker_factory.call_args
        assert args[:4] == ("localhost", 8081, attach_request.storage_path, "")
        assert kwargs == {"node_path": "node", "inspect_port": 0}

    @pytest.mark.asyncio
    async def test_unknown_messages_forwarded_to_worker(self, harness: _Harness) -> None:
        await harness.manager.start()
        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 1}))
        await _settle()
        worker = harness.workers[0]
        worker.post_message.assert_not_called()

        harness.ws.feed(json.dumps({"method": "unknownMethod"}))
        await _settle()

        worker.post_message.assert_called_once_with({"method": "unknownMethod"})
        assert harness.ws.sent == ['{"replyID":1}']

    @pytest.mark.asyncio
    async def test_new_runtime_stops_previous_worker_first(self, harness: _Harness) -> None:
        await harness.manager.start()
        events: list[str] = []
        first = harness._make_worker()
        second = harness._make_worker()
        first.stop.side_effect = lambda: events.append("stop-first")
        pending = [first, second]

        def _create(*args: Any, **kwargs: Any) -> MagicMock:
            events.append("create")
            return pending.pop(0)

        harness.worker_factory.side_effect = _create

        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 1}))
        await _settle()
        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 2}))
        await _settle()

        assert events == ["create", "stop-first", "create"]
        assert harness.manager.active_worker is second
        second.stop.assert_not_called()
        assert harness.ws.sent == ['{"replyID":1}', '{"replyID":2}']

    @pytest.mark.asyncio
    async def test_message_without_worker_is_dropped(self, harness: _Harness) -> None:
        await harness.manager.start()

        harness.ws.feed(json.dumps({"method": "executeApplicationScript", "url": "x"}))
        await _settle()

        harness.worker_factory.assert_not_called()
        assert harness.ws.sent == []
        assert harness.manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_malformed_message_keeps_connection(self, harness: _Harness) -> None:
        await harness.manager.start()

        harness.ws.feed("{not json")
        harness.ws.feed("[1, 2, 3]")
        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 3}))
        await _settle()

        assert harness.manager.state == ConnectionState.CONNECTED
        assert harness.ws.sent == ['{"replyID":3}']

    @pytest.mark.asyncio
    async def test_failed_worker_start_is_not_left_active(self, harness: _Harness) -> None:
        await harness.manager.start()
        harness.worker_factory.side_effect = None
        worker = harness._make_worker()
        worker.start.side_effect = worker_exited_error(1)
        harness.worker_factory.return_value = worker

        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 1}))
        await _settle()

        assert harness.manager.active_worker is None
        worker.stop.assert_called()
        assert harness.ws.sent == []
        assert any("exited with code 1" in output.text for output in harness.outputs)

    @pytest.mark.asyncio
    async def test_relay_failure_reported_to_output(self, harness: _Harness) -> None:
        await harness.manager.start()
        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 1}))
        await _settle()
        harness.workers[0].post_message.side_effect = BridgeError(
            code="ERR_HTTP_STATUS", message="Unable to resolve module"
        )

        harness.ws.feed(json.dumps({"method": "executeApplicationScript", "url": "x"}))
        await _settle()

        assert WorkerOutput(category="stderr", text="Unable to resolve module") in harness.outputs
        assert harness.manager.state == ConnectionState.CONNECTED


class TestWorkerReplies:
    """Tests for messages coming back from the worker."""

    @pytest.mark.asyncio
    async def test_worker_messages_sent_to_proxy(self, harness: _Harness) -> None:
        await harness.manager.start()

        await harness.manager._post_reply({"replyID": 5, "result": "null"})

        assert [json.loads(raw) for raw in harness.ws.sent] == [{"replyID": 5, "result": "null"}]

    @pytest.mark.asyncio
    async def test_worker_output_goes_to_listener_only(self, harness: _Harness) -> None:
        await harness.manager.start()

        await harness.manager._post_reply(WorkerOutput(category="stdout", text="hello"))

        assert harness.outputs == [WorkerOutput(category="stdout", text="hello")]
        assert harness.ws.sent == []


class TestReconnect:
    """Tests for reconnect policy."""

    @pytest.mark.asyncio
    async def test_reconnects_once_after_delay(self, harness: _Harness) -> None:
        await harness.manager.start()

        harness.ws.drop()
        await _settle()
        assert harness.manager.state == ConnectionState.RECONNECTING

        await asyncio.sleep(RECONNECT_DELAY_SECS / 2)
        assert harness.socket_factory.await_count == 1, "reconnected too quickly"

        await asyncio.sleep(RECONNECT_DELAY_SECS)
        await _settle()
        assert harness.socket_factory.await_count == 2
        assert harness.manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_no_reconnect_when_another_debugger_attached(self, harness: _Harness) -> None:
        await harness.manager.start()

        harness.ws.drop("Another debugger is already connected")
        await asyncio.sleep(RECONNECT_DELAY_SECS * 1.5)
        await _settle()

        assert harness.socket_factory.await_count == 1
        assert harness.manager.state == ConnectionState.DISCONNECTED
        assert any("Another debugger" in output.text for output in harness.outputs)

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_reconnect(self, harness: _Harness) -> None:
        await harness.manager.start()

        harness.ws.drop()
        await _settle()
        await harness.manager.stop()
        await asyncio.sleep(RECONNECT_DELAY_SECS * 1.5)

        assert harness.socket_factory.await_count == 1
        assert harness.manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_failed_reconnect_is_reported(self, harness: _Harness) -> None:
        await harness.manager.start()
        harness.packager.ensure_running.side_effect = packager_not_running_error(8081)

        harness.ws.drop()
        await asyncio.sleep(RECONNECT_DELAY_SECS * 1.5)
        await _settle()

        assert harness.socket_factory.await_count == 1
        assert harness.manager.state == ConnectionState.DISCONNECTED
        assert any("8081" in output.text for output in harness.outputs)


class TestConnectionStop:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_stop_stops_worker_and_closes_socket(self, harness: _Harness) -> None:
        await harness.manager.start()
        harness.ws.feed(json.dumps({"method": "prepareJSRuntime", "id": 1}))
        await _settle()
        ws = harness.ws

        await harness.manager.stop()
        await harness.manager.stop()

        harness.workers[0].stop.assert_called_once()
        assert ws.closed
        assert harness.manager.active_worker is None
        assert harness.manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_without_start(self, harness: _Harness) -> None:
        await harness.manager.stop()

        assert harness.manager.state == ConnectionState.DISCONNECTED
