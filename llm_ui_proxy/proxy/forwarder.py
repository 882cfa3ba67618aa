"""
Reverse proxy forwarder.

Forwards every request under a reserved path prefix to a single upstream:

  /llm-proxy/v1/models -> http://localhost:1234/v1/models

Method, body and headers (minus Host) go upstream unchanged; status, headers
and raw body bytes come back unchanged. The inbound body and the upstream
response body are streamed, never buffered.

Failures before the response is committed become 502/500 plain-text
responses. Failures while relaying the body are logged and the response is
left truncated.
"""

import re
from collections.abc import Iterable
from urllib.parse import quote

import httpx
from aiohttp import web
from multidict import CIMultiDict, CIMultiDictProxy

from llm_ui_proxy.proxy.errors import (
    InvalidTargetURLError,
    ProxyError,
    ProxyRequestError,
    UpstreamConnectionError,
)
from llm_ui_proxy.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PATH_PREFIX = "/llm-proxy"
REQUEST_EXCLUDED_HEADERS = ("host",)
# Message framing is redone by the server for the caller's connection
RESPONSE_EXCLUDED_HEADERS = ("transfer-encoding",)

_INVALID_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_FORBIDDEN_CHARS = re.compile(r"[\x00-\x20\x7f]")
_METHOD_TOKEN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
# pchar characters besides the unreserved ones quote() always keeps
_PATH_SAFE = "/:@!$&'()*+,;="


def _is_under_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def strip_prefix(path: str, prefix: str) -> str:
    """Remove the reserved prefix from a raw path.

    Args:
        path: Raw inbound path, optionally with a query string.
        prefix: Reserved prefix (e.g., "/llm-proxy").

    Returns:
        Remainder, always starting with "/" ("" becomes "/").

    Raises:
        InvalidTargetURLError: If the path does not lie under the prefix.
    """
    path_only, sep, query = path.partition("?")
    if not _is_under_prefix(path_only, prefix):
        raise InvalidTargetURLError(f"{path!r} is not under {prefix!r}")
    remainder = path_only[len(prefix) :] or "/"
    return remainder + sep + query


def forwarded_path(raw_path: str, decoded_path: str, prefix: str) -> str:
    """Pick the form of the inbound path to rewrite.

    The raw form is kept whenever it literally starts with the prefix, so
    escapes such as %2F reach the upstream untouched. Routing matches on the
    decoded path, so a client may also have escaped characters of the prefix
    itself; the decoded path is then re-quoted and the raw query appended.

    Args:
        raw_path: Undecoded inbound path including the query string.
        decoded_path: Percent-decoded path without the query string.
        prefix: Reserved prefix.

    Raises:
        InvalidTargetURLError: If neither form lies under the prefix.
    """
    path_only, sep, query = raw_path.partition("?")
    if _is_under_prefix(path_only, prefix):
        return raw_path
    if _is_under_prefix(decoded_path, prefix):
        return quote(decoded_path, safe=_PATH_SAFE) + sep + query
    raise InvalidTargetURLError(f"{raw_path!r} is not under {prefix!r}")


def build_target_url(base_url: str, prefix: str, raw_path: str) -> httpx.URL:
    """Rewrite an inbound path into the upstream target URL.

    Args:
        base_url: Upstream base URL without trailing slash.
        prefix: Reserved prefix to strip.
        raw_path: Undecoded inbound path including the query string.

    Returns:
        Parsed target URL.

    Raises:
        InvalidTargetURLError: If the remainder is not a valid path/query.
    """
    remainder = strip_prefix(raw_path, prefix)

    if _INVALID_ESCAPE.search(remainder):
        raise InvalidTargetURLError(f"invalid percent-escape in {remainder!r}")
    if _FORBIDDEN_CHARS.search(remainder):
        raise InvalidTargetURLError(f"invalid character in {remainder!r}")

    try:
        return httpx.URL(base_url + remainder)
    except httpx.InvalidURL as e:
        raise InvalidTargetURLError(str(e)) from e


def filter_headers(
    headers: CIMultiDictProxy[str] | CIMultiDict[str] | Iterable[tuple[str, str]],
    exclude: Iterable[str] = REQUEST_EXCLUDED_HEADERS,
) -> CIMultiDict[str]:
    """Copy headers, dropping excluded names.

    Repeated headers keep every value in their original order.

    Args:
        headers: Source headers (multidict or sequence of pairs).
        exclude: Header names to drop, compared case-insensitively.

    Returns:
        New multidict with the remaining headers.
    """
    excluded = {name.lower() for name in exclude}
    items = headers.items() if hasattr(headers, "items") else headers

    result: CIMultiDict[str] = CIMultiDict()
    for name, value in items:
        if name.lower() in excluded:
            continue
        result.add(name, value)
    return result


class ProxyForwarder:
    """Forwards prefixed requests to a fixed upstream.

    The forwarder holds no per-request state; the shared client is safe for
    concurrent use by every in-flight request.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient,
        prefix: str = DEFAULT_PATH_PREFIX,
        excluded_headers: Iterable[str] = REQUEST_EXCLUDED_HEADERS,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._prefix = prefix.rstrip("/")
        self._excluded_headers = tuple(excluded_headers)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def prefix(self) -> str:
        return self._prefix

    def build_request(self, request: web.Request, target_url: httpx.URL) -> httpx.Request:
        """Build the outbound request for an inbound one.

        The inbound body is piped through as an async iterator. Header
        values go out as the bytes the caller sent: aiohttp decodes them as
        UTF-8 with surrogateescape, while httpx encodes str values as ASCII.

        Raises:
            ProxyRequestError: If the method, headers or body are rejected.
        """
        if not _METHOD_TOKEN.fullmatch(request.method):
            raise ProxyRequestError(f"invalid method {request.method!r}")

        content = request.content.iter_any() if request.body_exists else None
        headers = filter_headers(request.headers, self._excluded_headers)

        try:
            raw_headers = [
                (name.encode("utf-8", "surrogateescape"), value.encode("utf-8", "surrogateescape"))
                for name, value in headers.items()
            ]
            return self._client.build_request(
                method=request.method,
                url=target_url,
                headers=raw_headers,
                content=content,
            )
        except (ValueError, TypeError, httpx.HTTPError) as e:
            raise ProxyRequestError(str(e)) from e

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """aiohttp handler for every method under the prefix."""
        try:
            path = forwarded_path(request.raw_path, request.path, self._prefix)
            target_url = build_target_url(self._base_url, self._prefix, path)
        except InvalidTargetURLError as e:
            logger.error("Invalid target URL", path=request.raw_path, error=str(e))
            return await self._error_response(request, e)

        try:
            outbound = self.build_request(request, target_url)
        except ProxyRequestError as e:
            logger.error("Could not create proxy request", target=str(target_url), error=str(e))
            return await self._error_response(request, e)

        try:
            upstream = await self._client.send(outbound, stream=True)
        except httpx.RequestError as e:
            logger.error("Could not connect to LLM server", target=str(target_url), error=str(e))
            return await self._error_response(request, UpstreamConnectionError(str(e)))

        try:
            return await self._relay(request, upstream)
        finally:
            await upstream.aclose()

    async def _relay(self, request: web.Request, upstream: httpx.Response) -> web.StreamResponse:
        response = web.StreamResponse(
            status=upstream.status_code,
            reason=upstream.reason_phrase or None,
        )
        response.headers.extend(
            filter_headers(upstream.headers.multi_items(), RESPONSE_EXCLUDED_HEADERS)
        )
        await response.prepare(request)

        try:
            async for chunk in upstream.aiter_raw():
                await response.write(chunk)
            await response.write_eof()
        except (httpx.HTTPError, ConnectionError) as e:
            # Headers are already committed; closing the connection is the
            # only way left to signal the truncated body.
            response.force_close()
            logger.error(
                "Error copying response body",
                target=str(upstream.request.url),
                status=upstream.status_code,
                error=str(e),
            )
        return response

    async def _error_response(self, request: web.Request, error: ProxyError) -> web.Response:
        # Drain the unread inbound body so the connection can be reused.
        await request.release()
        return web.Response(status=error.status, text=error.public_message)
