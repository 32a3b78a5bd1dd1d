"""
ProxyEngine.py

Forwards one inbound gateway request to an embedded device and relays the
answer back to the client.

Each forward opens its own upstream connection (no pooling: the devices run
small HTTP stacks that do not cope well with reused keep-alive sockets), sends
the request to the route's rewritten path, and hands back a ProxyResult whose
body is read from the upstream socket one bounded chunk at a time. Failures
never escape as exceptions: they come back as error results that the single
response-writing path (respond) turns into a 500.

Configuration (GatewayConfig):
  - connect_timeout: seconds to open the upstream TCP connection
  - idle_timeout: max seconds between upstream reads
  - chunk_size: bytes relayed per read
  - verbose: enable debug output

Dependencies:
  - requests for upstream HTTP
  - flask/werkzeug for the client-facing Response object
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import quote

import requests
from flask import Response

from common.errors import GatewayError, UpstreamReset, UpstreamUnreachable
from common.route_table import ResponsePolicy, RouteEntry

# Headers that describe a single connection and must not cross the proxy
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

# Client headers never forwarded upstream (Host is rewritten to the device's own)
DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "content-length"}

# Raw query bytes outside this set are percent-encoded; existing %XX escapes stay as sent
QUERY_SAFE_CHARS = "/?&=%:+,;@!$'()*[]~"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InboundRequest:
    """Framework-neutral snapshot of the client request being forwarded."""
    method: str
    path: str
    query_string: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_flask(cls, request) -> "InboundRequest":
        return cls(
            method=request.method,
            path=request.path,
            query_string=quote(request.query_string, safe=QUERY_SAFE_CHARS),
            headers=dict(request.headers),
        )


class ProxyResult:
    """
    Outcome of one forward: the relayed response or the error that replaced it.

    The result owns the upstream connection until close() is called. close()
    runs every registered cleanup exactly once, so it is safe to call from
    both the body generator and the response's close hook. A failing cleanup
    is logged and the remaining ones still run.
    """

    def __init__(self, route: RouteEntry, status: int, headers: List[Tuple[str, str]],
                 body: Union[bytes, Iterable[bytes]] = b"",
                 error: Optional[GatewayError] = None):
        self.route = route
        self.status = status
        self.headers = headers
        self.body = body
        self.error = error
        self._closers: List[Callable[[], None]] = []
        self._closed = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def closed(self) -> bool:
        return self._closed

    def on_close(self, callback: Callable[[], None]) -> None:
        self._closers.append(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for callback in self._closers:
            try:
                callback()
            except Exception as e:
                logger.error(f"[Proxy] {self.route.name}: close callback failed: {e}")

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None


class ProxyEngine:
    """
    Per-request forwarding primitive shared by all command and sensor routes.

    Holds no per-request state, so one instance serves every request thread.
    """

    tag = "[Proxy]"

    def __init__(self, config):
        """
        Args:
            config (GatewayConfig): frozen gateway configuration
        """
        self.config = config
        self.connect_timeout = config.connect_timeout
        self.idle_timeout = config.idle_timeout
        self.chunk_size = config.chunk_size
        self.verbose = config.verbose

        self.logger = logging.getLogger(type(self).__module__)
        if self.verbose:
            self.logger.setLevel(logging.DEBUG)

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    def forward(self, request: InboundRequest, route: RouteEntry) -> ProxyResult:
        """
        Forwards a request to the route's upstream.

        Args:
            request: inbound request snapshot (method and query string are kept)
            route: matched route entry

        Returns:
            ProxyResult: streaming result on success, 500 error result when the
            upstream cannot be reached
        """
        url = self.build_url(request, route)
        self.logger.debug(f"{self.tag} {request.method} {request.path} -> {url}")

        try:
            upstream = self._open_upstream(request, url)
        except requests.exceptions.RequestException as e:
            error = UpstreamUnreachable(route.upstream.name.value, url, e)
            self.logger.warning(f"{self.tag} {route.name}: {error}")
            return self.error_result(route, error)

        headers = self.response_headers(upstream, route)
        result = ProxyResult(route, upstream.status_code, headers)
        result.on_close(upstream.close)
        result.body = self._relay_body(upstream, route, url)
        return result

    def build_url(self, request: InboundRequest, route: RouteEntry) -> str:
        url = route.upstream_url
        if request.query_string:
            url = f"{url}?{request.query_string}"
        return url

    def upstream_headers(self, request: InboundRequest) -> Dict[str, str]:
        headers = {
            name: value for name, value in request.headers.items()
            if name.lower() not in DROPPED_REQUEST_HEADERS
        }
        headers["Connection"] = "close"
        return headers

    def _open_upstream(self, request: InboundRequest, url: str) -> requests.Response:
        # requests.request() builds and closes a throwaway Session, so every
        # forward gets a fresh TCP connection.
        return requests.request(
            request.method,
            url,
            headers=self.upstream_headers(request),
            timeout=(self.connect_timeout, self.idle_timeout),
            stream=True,
            allow_redirects=False,
        )

    def _relay_body(self, upstream: requests.Response, route: RouteEntry, url: str):
        """Yields the upstream body chunk by chunk; always closes the upstream."""
        sent = 0
        try:
            for chunk in upstream.iter_content(chunk_size=self.chunk_size):
                if chunk:
                    sent += len(chunk)
                    yield chunk
        except requests.exceptions.RequestException as e:
            reset = UpstreamReset(route.upstream.name.value, url, e)
            self.logger.info(f"{self.tag} {route.name}: {reset} ({sent} bytes relayed)")
        finally:
            upstream.close()
            self.logger.debug(f"{self.tag} {route.name}: session closed after {sent} bytes")

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def policy_for(self, upstream: requests.Response, route: RouteEntry) -> ResponsePolicy:
        return route.policy

    def response_headers(self, upstream: requests.Response, route: RouteEntry) -> List[Tuple[str, str]]:
        # iter_content() undoes any Content-Encoding, so the upstream's length
        # and encoding no longer describe the bytes we send.
        decoded = "content-encoding" in upstream.headers
        headers = []
        for name, value in upstream.headers.items():
            lowered = name.lower()
            if lowered in HOP_BY_HOP_HEADERS:
                continue
            if decoded and lowered in ("content-encoding", "content-length"):
                continue
            headers.append((name, value))
        return self.policy_for(upstream, route).apply(headers)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def error_payload(self, route: RouteEntry, error: GatewayError) -> Tuple[str, bytes]:
        """Machine-readable body so the client app can decide to retry."""
        body = json.dumps({"error": f"Proxy error for {route.name}"}).encode("utf-8")
        return "application/json", body

    def error_result(self, route: RouteEntry, error: GatewayError, status: int = 500) -> ProxyResult:
        content_type, body = self.error_payload(route, error)
        headers = [
            ("Content-Type", content_type),
            ("Access-Control-Allow-Origin", route.policy.cors_origin),
        ]
        return ProxyResult(route, status, headers, body=body, error=error)

    # ------------------------------------------------------------------
    # Response writing
    # ------------------------------------------------------------------

    def respond(self, result: ProxyResult) -> Response:
        """
        Turns any ProxyResult, success or error, into the client response.

        The result is closed when the WSGI server closes the response, which
        also happens when the client goes away before the body is done.
        """
        response = Response(result.body, status=result.status, headers=result.headers)
        response.call_on_close(result.close)
        return response
