"""Minimal conditional-GET client used to pull bundles and worker scripts from the packager."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from rn_debug_bridge.errors import http_status_error, request_failed_error

logger = structlog.get_logger()

_DEFAULT_TIMEOUT_SECS = 20.0


@dataclass(frozen=True)
class FetchResponse:
    body: str
    code: int
    etag: str | None


class HttpFetcher:
    """Issues GET requests; one short-lived httpx client per call."""

    def __init__(
        self,
        timeout: float = _DEFAULT_TIMEOUT_SECS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def request_with_etag(self, url: str, etag: str | None = None) -> FetchResponse:
        """GET ``url``, revalidating against ``etag`` when one is known.

        Returns:
            FetchResponse for 200 and 304 responses

        Raises:
            BridgeError: for any other status (message is the body) or a transport failure
        """
        headers = {"If-None-Match": etag} if etag else {}
        response = await self._get(url, headers)
        if response.status_code not in (200, 304):
            raise http_status_error(url, response.status_code, response.text)
        return FetchResponse(
            body=response.text,
            code=response.status_code,
            etag=response.headers.get("etag"),
        )

    async def request(self, url: str, expect_ok: bool = False) -> str:
        """GET ``url`` and return the body text."""
        response = await self._get(url, {})
        if expect_ok and response.status_code != 200:
            raise http_status_error(url, response.status_code, response.text)
        return response.text

    async def _get(self, url: str, headers: dict[str, str]) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self._timeout,
            ) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.debug("http_request_failed", url=url, error=str(exc))
            raise request_failed_error(url, str(exc) or type(exc).__name__) from None
        logger.debug("http_response", url=url, status=response.status_code)
        return response
