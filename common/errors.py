"""
common/errors.py

Failure types raised or reported by the gateway.

Upstream communication failures are caught at the proxy session boundary and
turned into client responses; UnknownUpstream is a startup-time error that
keeps the process from starting.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""


class UpstreamUnreachable(GatewayError, ConnectionError):
    """Connect failure, DNS failure, or timeout before response headers."""

    def __init__(self, upstream, url, reason):
        self.upstream = upstream
        self.url = url
        self.reason = reason
        super().__init__(f"{upstream} unreachable at {url}: {reason}")


class UpstreamReset(GatewayError, ConnectionError):
    """The upstream dropped the connection after the response started."""

    def __init__(self, upstream, url, reason):
        self.upstream = upstream
        self.url = url
        self.reason = reason
        super().__init__(f"{upstream} reset while relaying {url}: {reason}")


class UnknownUpstream(GatewayError, LookupError):
    """A route references an upstream that was never registered."""

    def __init__(self, name):
        self.name = name
        super().__init__(f"Upstream '{name}' is not registered.")


class RouteNotFound(GatewayError, LookupError):
    """No route matches the request; answered by the fallback handler."""

    def __init__(self, method, path):
        self.method = method
        self.path = path
        super().__init__(f"No route for {method} {path}")
