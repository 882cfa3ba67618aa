"""
Proxy error types.

Each error maps to the status code and short plain-text body returned to the
caller. The detail passed to the constructor is only ever logged.
"""


class ProxyError(Exception):
    """Base class for failures handled by the forwarder."""

    status = 502
    public_message = "Bad Gateway"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.public_message)
        self.detail = detail


class InvalidTargetURLError(ProxyError):
    """The rewritten path does not form a valid upstream URL."""

    status = 502
    public_message = "Bad Gateway: Invalid target URL"


class ProxyRequestError(ProxyError):
    """The outbound request could not be constructed."""

    status = 500
    public_message = "Internal Server Error: Could not create proxy request"


class UpstreamConnectionError(ProxyError):
    """The upstream was unreachable or failed before sending a response."""

    status = 502
    public_message = "Bad Gateway: Could not connect to LLM server"
