"""
Reverse proxy for the local LLM server.

Lets the browser UI reach an inference server (LM Studio, Ollama, ...)
through the same origin it was served from, so the server needs no CORS.
"""

from llm_ui_proxy.proxy.errors import (
    InvalidTargetURLError,
    ProxyError,
    ProxyRequestError,
    UpstreamConnectionError,
)
from llm_ui_proxy.proxy.forwarder import (
    ProxyForwarder,
    build_target_url,
    filter_headers,
    strip_prefix,
)

__all__ = [
    "ProxyForwarder",
    "build_target_url",
    "filter_headers",
    "strip_prefix",
    "ProxyError",
    "InvalidTargetURLError",
    "ProxyRequestError",
    "UpstreamConnectionError",
]
