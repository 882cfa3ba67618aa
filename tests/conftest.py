"""
Pytest fixtures and configuration for LLM UI Proxy tests.

Markers:
- @pytest.mark.unit: Single function/class, no sockets. DEFAULT for unmarked tests.
- @pytest.mark.integration: Real aiohttp servers on localhost (proxy + fake upstream).

Mock Strategy:
- The upstream inference server is simulated with an aiohttp TestServer
  that records every request it receives.
- Connection failures use httpx.MockTransport or an unused local port.
"""

import asyncio
import os
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from multidict import CIMultiDictProxy

# Set test environment before importing anything else
os.environ["LLM_UI_PROXY_CONFIG_DIR"] = str(Path(__file__).parent.parent / "config")


def pytest_configure(config):
    """Register custom markers for test classification."""
    config.addinivalue_line(
        "markers", "unit: Unit tests with no external dependencies (fast, <1s/test)"
    )
    config.addinivalue_line(
        "markers", "integration: Tests running real local servers (proxy + fake upstream)"
    )


def pytest_collection_modifyitems(config, items):
    """Tests without explicit markers are classified as unit tests."""
    for item in items:
        has_classification = any(
            marker.name in ("unit", "integration") for marker in item.iter_markers()
        )
        if not has_classification:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Fake upstream (stands in for LM Studio)
# =============================================================================


@dataclass
class SeenRequest:
    """A request as received by the fake upstream."""

    method: str
    raw_path: str
    headers: CIMultiDictProxy[str]
    body: bytes


@dataclass
class FakeUpstream:
    """Running fake upstream server and the requests it has received."""

    server: TestServer
    seen: list[SeenRequest] = field(default_factory=list)
    # Set when a streaming response loses its client
    disconnected: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def base_url(self) -> str:
        return f"http://{self.server.host}:{self.server.port}"


def build_upstream_app(seen: list[SeenRequest], disconnected: asyncio.Event) -> web.Application:
    """Create the fake inference server application."""

    @web.middleware
    async def record(request: web.Request, handler):
        body = await request.read()
        seen.append(
            SeenRequest(
                method=request.method,
                raw_path=request.raw_path,
                headers=request.headers,
                body=body,
            )
        )
        return await handler(request)

    async def models(request: web.Request) -> web.Response:
        return web.Response(body=b'{"ok":true}', content_type="application/json")

    async def echo(request: web.Request) -> web.Response:
        return web.Response(
            body=await request.read(),
            content_type=request.content_type,
        )

    async def multi_headers(request: web.Request) -> web.Response:
        response = web.Response(text="cookies")
        response.headers.add("Set-Cookie", "a=1")
        response.headers.add("Set-Cookie", "b=2")
        response.headers["X-Upstream"] = "lm-studio"
        return response

    async def stream(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        for i in range(3):
            await response.write(f"data: chunk-{i}\n\n".encode())
        await response.write_eof()
        return response

    async def endless(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await response.prepare(request)
        try:
            while True:
                await response.write(b"data: " + b"x" * 1024 + b"\n\n")
                await asyncio.sleep(0.01)
        finally:
            disconnected.set()

    async def status(request: web.Request) -> web.Response:
        code = int(request.match_info["code"])
        return web.Response(status=code, text=f"status {code}")

    async def catch_all(request: web.Request) -> web.Response:
        return web.Response(text=f"path={request.path} query={request.query_string}")

    app = web.Application(middlewares=[record], client_max_size=16 * 1024 * 1024)
    app.router.add_get("/v1/models", models)
    app.router.add_post("/v1/chat/completions", echo)
    app.router.add_route("*", "/echo", echo)
    app.router.add_get("/headers", multi_headers)
    app.router.add_get("/stream", stream)
    app.router.add_get("/endless", endless)
    app.router.add_get("/status/{code}", status)
    app.router.add_route("*", "/{tail:.*}", catch_all)
    return app


@pytest_asyncio.fixture
async def upstream() -> AsyncGenerator[FakeUpstream, None]:
    """Start the fake upstream on a free local port."""
    seen: list[SeenRequest] = []
    disconnected = asyncio.Event()
    server = TestServer(build_upstream_app(seen, disconnected))
    await server.start_server()
    try:
        yield FakeUpstream(server=server, seen=seen, disconnected=disconnected)
    finally:
        await server.close()


@pytest.fixture
def proxy_settings(upstream: FakeUpstream):
    """Settings pointing the proxy at the fake upstream."""
    from llm_ui_proxy.utils.config import Settings, UpstreamConfig

    return Settings(upstream=UpstreamConfig(base_url=upstream.base_url))


@pytest_asyncio.fixture
async def proxy_client(proxy_settings) -> AsyncGenerator[TestClient, None]:
    """Client talking to a running proxy app."""
    from llm_ui_proxy.proxy.server import create_app

    app = create_app(proxy_settings)
    async with TestClient(TestServer(app)) as client:
        yield client
