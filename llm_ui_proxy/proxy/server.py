"""
LLM UI Proxy Server.

Serves the bundled game UI and forwards API calls to a local inference
server so the browser never needs CORS from it.

Routes:
  /llm-proxy, /llm-proxy/* -> http://localhost:1234/*  (any method)
  /, /{path}               -> bundled static assets    (GET/HEAD)

The upstream URL, prefix and listening address come from settings
(config/settings.yaml or LLM_UI_PROXY_* environment variables).
"""

import asyncio
import functools
import signal
import sys
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from pathlib import Path

import httpx
from aiohttp import web

from llm_ui_proxy.proxy.forwarder import ProxyForwarder
from llm_ui_proxy.utils.config import Settings, get_settings
from llm_ui_proxy.utils.logging import (
    LogContext,
    configure_logging,
    get_logger,
)
from llm_ui_proxy.web.static import StaticBundle, load_bundle

logger = get_logger(__name__)

HTTP_CLIENT_KEY = web.AppKey("http_client", httpx.AsyncClient)
FORWARDER_KEY = web.AppKey("forwarder", ProxyForwarder)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the client shared by all forwarded requests."""
    client = httpx.AsyncClient(timeout=settings.upstream.timeout)
    # Raw upstream bytes are relayed, so only the caller may negotiate encoding.
    del client.headers["Accept-Encoding"]
    return client


@web.middleware
async def request_context_middleware(
    request: web.Request, handler: Handler
) -> web.StreamResponse:
    """Bind request id/method/path to every log line of the request."""
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
    with LogContext(request_id=request_id, method=request.method, path=request.path):
        response = await handler(request)
        logger.debug("request_completed", status=response.status)
        return response


def create_app(
    settings: Settings | None = None,
    client: httpx.AsyncClient | None = None,
    assets: Mapping[str, Path] | None = None,
) -> web.Application:
    """Create aiohttp application.

    Args:
        settings: Settings to use. Loaded from config/env if None.
        client: Shared upstream client. Created (and closed on cleanup) if None.
        assets: Static bundle. Loaded from settings.static.assets_dir if None.

    Returns:
        Configured application.
    """
    if settings is None:
        settings = get_settings()
    if assets is None:
        assets = load_bundle(settings.static.assets_dir)

    app = web.Application(middlewares=[request_context_middleware])

    async def http_client_ctx(app: web.Application) -> AsyncIterator[None]:
        owned = client is None
        app[HTTP_CLIENT_KEY] = create_http_client(settings) if owned else client
        app[FORWARDER_KEY] = ProxyForwarder(
            base_url=settings.upstream.base_url,
            client=app[HTTP_CLIENT_KEY],
            prefix=settings.upstream.path_prefix,
            excluded_headers=settings.upstream.excluded_headers,
        )
        yield
        if owned:
            await app[HTTP_CLIENT_KEY].aclose()

    app.cleanup_ctx.append(http_client_ctx)

    async def handle_proxy(request: web.Request) -> web.StreamResponse:
        return await request.app[FORWARDER_KEY].handle(request)

    prefix = settings.upstream.path_prefix
    static = StaticBundle(assets)

    # Proxy routes first; the static catch-all must not shadow them.
    app.router.add_route("*", f"{prefix}/{{tail:.*}}", handle_proxy)
    app.router.add_route("*", prefix, handle_proxy)
    app.router.add_get("/{path:.*}", static.handle)

    return app


async def serve(settings: Settings | None = None, app: web.Application | None = None) -> None:
    """Run the server until SIGINT/SIGTERM.

    Args:
        settings: Settings to use. Loaded from config/env if None.
        app: Application to serve. Created from settings if None.

    Raises:
        OSError: If the listening socket cannot be bound.
    """
    if settings is None:
        settings = get_settings()
    if app is None:
        app = create_app(settings)

    host = settings.server.host
    port = settings.server.port

    logger.info(
        "Starting LLM UI Proxy Server",
        host=host,
        port=port,
        upstream_url=settings.upstream.base_url,
        path_prefix=settings.upstream.path_prefix,
    )

    runner = web.AppRunner(app)
    await runner.setup()

    try:
        site = web.TCPSite(runner, host, port)
        await site.start()
    except OSError:
        await runner.cleanup()
        raise

    logger.info(f"Server running on http://localhost:{port}")

    stop_event = asyncio.Event()

    def handle_signal(sig: int) -> None:
        logger.info("Received shutdown signal", signal=sig)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, functools.partial(handle_signal, sig))

    await stop_event.wait()

    logger.info("Shutting down server")
    await runner.cleanup()


def main() -> int:
    """Process entry point. Returns the exit status."""
    settings = get_settings()
    configure_logging(
        log_level=settings.general.log_level,
        json_format=settings.general.json_logs,
    )

    try:
        app = create_app(settings)
    except FileNotFoundError as e:
        logger.error(
            "Could not load static assets",
            assets_dir=settings.static.assets_dir,
            error=str(e),
        )
        return 1

    try:
        asyncio.run(serve(settings, app))
    except OSError as e:
        logger.error(
            "Could not bind server",
            host=settings.server.host,
            port=settings.server.port,
            error=str(e),
        )
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
