"""
Shared fixtures: a three-node cluster and helpers to fake node HTTP answers.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List

import httpx
import pytest

from catalog.models import Node

URLS = {
    "server-a": "http://node-a:4000",
    "server-b": "http://node-b:4000",
    "server-c": "http://node-c:4000",
}


def make_nodes() -> List[Node]:
    return [
        Node(id=node_id, name=node_id, url=url, priority=i + 1)
        for i, (node_id, url) in enumerate(URLS.items())
    ]


@pytest.fixture
def nodes() -> List[Node]:
    return make_nodes()


class FakeCluster:
    """
    Routes requests by host to per-node handlers and records every request.
    A handler is either an exception instance to raise or a callable
    taking the request and returning an httpx.Response.
    """

    def __init__(self):
        self.handlers: Dict[str, object] = {}
        self.requests: List[httpx.Request] = []

    def set(self, node_id: str, handler) -> None:
        self.handlers[httpx.URL(URLS[node_id]).host] = handler

    def requests_to(self, node_id: str) -> List[httpx.Request]:
        host = httpx.URL(URLS[node_id]).host
        return [r for r in self.requests if r.url.host == host]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.host)
        if handler is None:
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(handler, Exception):
            raise handler
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


def ok(json=None) -> Callable[[httpx.Request], httpx.Response]:
    body = json if json is not None else {"status": "healthy"}
    return lambda request: httpx.Response(200, json=body)


def status(code: int, json=None) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(code, json=json)


@asynccontextmanager
async def drip_server(gap: float = 0.3, chunks: int = 10) -> AsyncIterator[str]:
    """
    A real HTTP server on localhost that answers 200 at once, then sends the
    body one byte every `gap` seconds. Each read finishes well inside a
    per-read timeout, so only a deadline on the whole request cuts it short.
    Yields the server's base URL.
    """
    handlers = set()

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        handlers.add(asyncio.current_task())
        try:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(
                b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n"
                b"Content-Length: %d\r\n\r\n" % chunks
            )
            await writer.drain()
            for _ in range(chunks):
                await asyncio.sleep(gap)
                writer.write(b".")
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)
        server.close()
        await server.wait_closed()
