"""Transport collaborator: issues one HTTP call and times it."""

import time
from typing import Any, Dict, Optional, Protocol

import httpx

from loadsim.models import Response


class TransportError(Exception):
    """Raised when a call does not complete (connection failure, timeout)."""


class Transport(Protocol):
    async def call(
        self,
        method: str,
        url: str,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Response:
        ...


class HttpxTransport:
    """Async transport over ``httpx.AsyncClient``.

    No retries; each call is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        max_connections: int = 200,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if transport is None:
            transport = httpx.AsyncHTTPTransport(
                retries=0,
                limits=httpx.Limits(
                    max_connections=max_connections,
                    max_keepalive_connections=max_connections // 2,
                ),
            )
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(timeout),
        )

    async def call(
        self,
        method: str,
        url: str,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Response:
        t0 = time.monotonic()
        try:
            resp = await self._client.request(method, url, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"timeout calling {method} {url}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {url} failed: {exc}") from exc
        latency_ms = (time.monotonic() - t0) * 1000.0
        return Response(
            status_code=resp.status_code,
            body=_decode_body(resp),
            latency_ms=latency_ms,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


def _decode_body(resp: httpx.Response) -> Any:
    """JSON body when parseable, otherwise the raw text."""
    try:
        return resp.json()
    except ValueError:
        return resp.text
