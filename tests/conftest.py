"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from rn_debug_bridge.debugger.sandbox_worker import SandboxWorker
from rn_debug_bridge.debugger.script_importer import ScriptImporter
from rn_debug_bridge.files.writer import FileWriter
from rn_debug_bridge.models import AttachRequest
from rn_debug_bridge.packager import PackagerStatus

_CLOSED = object()


class FakeSocket:
    """Stands in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.close_reason: str | None = None
        self._inbox: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, raw: str) -> None:
        """Deliver a message from the proxy."""
        self._inbox.put_nowait(raw)

    def drop(self, reason: str = "") -> None:
        """Simulate the proxy closing the connection."""
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSED)

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return str(item)


@pytest.fixture
def sockets() -> list[FakeSocket]:
    """Every socket handed out by ``socket_factory``, in creation order."""
    return []


@pytest.fixture
def socket_factory(sockets: list[FakeSocket]) -> AsyncMock:
    def _connect(url: str) -> FakeSocket:
        ws = FakeSocket()
        sockets.append(ws)
        return ws

    return AsyncMock(side_effect=_connect)


@pytest.fixture
def attach_request(tmp_path: Path) -> AttachRequest:
    return AttachRequest(address="localhost", port=8081, storage_path=tmp_path)


@pytest.fixture
def packager() -> MagicMock:
    """PackagerStatus that reports the packager as running."""
    mock = MagicMock(spec=PackagerStatus)
    mock.is_running = AsyncMock(return_value=True)
    mock.ensure_running = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def writer() -> MagicMock:
    mock = MagicMock(spec=FileWriter)
    mock.write_file = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def script_importer() -> MagicMock:
    mock = MagicMock(spec=ScriptImporter)
    mock.download_debugger_worker = AsyncMock(return_value="// packager debugger worker")
    mock.download_app_script = AsyncMock()
    return mock


@pytest.fixture
def make_worker() -> Callable[[], MagicMock]:
    """Factory for SandboxWorker doubles that start immediately on port 9229."""

    def _make() -> MagicMock:
        worker = MagicMock(spec=SandboxWorker)
        worker.start = AsyncMock(return_value=9229)
        worker.post_message = AsyncMock(return_value=None)
        worker.stop = MagicMock(return_value=None)
        return worker

    return _make
