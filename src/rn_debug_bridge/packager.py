"""Packager reachability checks."""

from __future__ import annotations

import structlog

from rn_debug_bridge.debugger.http_fetcher import HttpFetcher
from rn_debug_bridge.errors import BridgeError, packager_not_running_error

logger = structlog.get_logger()

STATUS_PATH = "/status"
RUNNING_STATUS = "packager-status:running"


def host_for(address: str, port: int) -> str:
    return f"{address}:{port}"


class PackagerStatus:
    """Asks the packager whether it is up via its status endpoint."""

    def __init__(self, fetcher: HttpFetcher | None = None) -> None:
        self._fetcher = fetcher or HttpFetcher(timeout=3.0)

    async def is_running(self, host: str) -> bool:
        try:
            body = await self._fetcher.request(f"http://{host}{STATUS_PATH}")
        except BridgeError as exc:
            logger.debug("packager_status_unreachable", host=host, error=exc.message)
            return False
        running = body.strip() == RUNNING_STATUS
        if not running:
            logger.debug("packager_status_unexpected", host=host, body=body[:200])
        return running

    async def ensure_running(self, address: str, port: int) -> None:
        """Raise a port-specific error unless the packager answers."""
        if not await self.is_running(host_for(address, port)):
            raise packager_not_running_error(port)
