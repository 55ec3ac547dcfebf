"""Shared fixtures: a PropstackClient wired to an in-process mock transport.

Tests register handlers with ``routes`` keyed by ``(method, path)``; each
handler receives the ``httpx.Request`` and returns an ``httpx.Response``
(async handlers are awaited by the transport).
Sleeps are an AsyncMock so retry backoff runs instantly and can be asserted.
"""

from __future__ import annotations

from typing import Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from propstack_mcp.core.clients.propstack import PropstackClient

Handler = Callable[[httpx.Request], httpx.Response]


class Routes:
    """Route table for the mock transport, recording every request it serves."""

    def __init__(self) -> None:
        self.handlers: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, handler: Handler) -> None:
        self.handlers[(method, "/v1" + path)] = handler

    def json(self, method: str, path: str, data, status: int = 200) -> None:
        self.add(method, path, lambda request: httpx.Response(status, json=data))

    def sequence(self, method: str, path: str, responses: list[httpx.Response]) -> None:
        """Serve ``responses`` in order; the last one repeats."""
        queue = list(responses)

        def handler(request: httpx.Request) -> httpx.Response:
            served = queue.pop(0) if len(queue) > 1 else queue[0]
            return httpx.Response(served.status_code, headers=served.headers, content=served.content)

        self.add(method, path, handler)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == "/v1" + path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        return handler(request)


@pytest.fixture
def routes() -> Routes:
    return Routes()


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest_asyncio.fixture
async def client(routes, sleep):
    async with PropstackClient("test-key", transport=httpx.MockTransport(routes), sleep=sleep) as c:
        yield c


def page_slice(request: httpx.Request, items: list, total: int | None = None) -> httpx.Response:
    """Serve one page of ``items`` according to the request's page/per_page params."""
    page = int(request.url.params.get("page", "1"))
    per_page = int(request.url.params.get("per_page", "25"))
    chunk = items[(page - 1) * per_page:page * per_page]
    if total is None:
        return httpx.Response(200, json=chunk)
    return httpx.Response(200, json={"data": chunk, "meta": {"total_count": total}})
