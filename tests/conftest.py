"""Shared fakes for transport-level tests."""

import asyncio

import pytest
import structlog

from loadsim.models import Response
from loadsim.transport import TransportError


class StaticTransport:
    """Answers every call with the same status, body, and reported latency."""

    def __init__(self, status_code=200, latency_ms=50.0, body=None):
        self.status_code = status_code
        self.latency_ms = latency_ms
        self.body = body if body is not None else {"ok": True}
        self.calls = []

    async def call(self, method, url, json=None, headers=None):
        self.calls.append((method, url, json, headers))
        await asyncio.sleep(0)
        return Response(self.status_code, self.body, self.latency_ms)


class ScriptedTransport:
    """Routes calls by (method, path suffix) to a Response or an exception.

    Unrouted calls raise TransportError.
    """

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    async def call(self, method, url, json=None, headers=None):
        self.calls.append((method, url, json, headers))
        await asyncio.sleep(0)
        for (m, suffix), answer in self.routes.items():
            if m == method and url.endswith(suffix):
                if isinstance(answer, Exception):
                    raise answer
                return answer
        raise TransportError(f"no route for {method} {url}")

    def paths(self):
        return ["/" + url.split("://", 1)[-1].split("/", 1)[-1] for _, url, _, _ in self.calls]


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def static_transport():
    return StaticTransport


@pytest.fixture
def scripted_transport():
    return ScriptedTransport
