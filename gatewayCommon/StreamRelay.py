"""
StreamRelay.py

ProxyEngine specialization for the camera's unbounded MJPEG stream.

Differences from a command forward:
  - every upstream chunk is handed to the client as soon as it is read
  - the Content-Type is forced to the agreed multipart boundary unless the
    camera reports a complete multipart/x-mixed-replace type of its own
  - the response is marked uncacheable
  - failures answer with plain text, since the body may end up rendered in
    an <img> element
  - only max_stream_sessions relays run at once; each holds a slot until its
    session closes

No reconnect is attempted when the camera drops; the client re-requests
/api/stream.
"""

import threading
from dataclasses import replace
from typing import Optional, Tuple

import requests
from werkzeug.http import parse_options_header

from common.errors import GatewayError
from common.route_table import ResponsePolicy, RouteEntry

from .ProxyEngine import InboundRequest, ProxyEngine, ProxyResult

MULTIPART_MIXED_REPLACE = "multipart/x-mixed-replace"


def declared_boundary(content_type: Optional[str]) -> Optional[str]:
    """Boundary of a multipart/x-mixed-replace content type, or None if absent."""
    if not content_type:
        return None
    mimetype, options = parse_options_header(content_type)
    if mimetype.lower() != MULTIPART_MIXED_REPLACE:
        return None
    return options.get("boundary") or None


class StreamBusy(GatewayError):
    """All stream relay slots are taken."""


class StreamRelay(ProxyEngine):
    tag = "[Stream]"

    def __init__(self, config):
        super().__init__(config)
        self.max_sessions = config.max_stream_sessions
        self._slots = threading.BoundedSemaphore(self.max_sessions) if self.max_sessions else None
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active_sessions(self) -> int:
        return self._active

    def forward(self, request: InboundRequest, route: RouteEntry) -> ProxyResult:
        if not self._acquire():
            self.logger.warning(f"{self.tag} {self.max_sessions} relays already running; refusing {request.path}")
            return self.error_result(route, StreamBusy("All stream slots in use"), status=503)

        result = super().forward(request, route)
        if result.ok:
            result.on_close(self._release)
            self.logger.info(f"{self.tag} relay started ({self._active} active)")
        else:
            self._release()
        return result

    def _acquire(self) -> bool:
        if self._slots is not None and not self._slots.acquire(blocking=False):
            return False
        with self._lock:
            self._active += 1
        return True

    def _release(self) -> None:
        with self._lock:
            self._active -= 1
        if self._slots is not None:
            self._slots.release()
        self.logger.info(f"{self.tag} relay ended ({self._active} active)")

    def policy_for(self, upstream: requests.Response, route: RouteEntry) -> ResponsePolicy:
        reported = upstream.headers.get("Content-Type")
        if declared_boundary(reported):
            return replace(route.policy, content_type_override=reported)
        if reported:
            self.logger.debug(f"{self.tag} replacing upstream content type '{reported}'")
        return route.policy

    def error_payload(self, route: RouteEntry, error: GatewayError) -> Tuple[str, bytes]:
        if isinstance(error, StreamBusy):
            return "text/plain; charset=utf-8", b"Stream busy"
        return "text/plain; charset=utf-8", b"Stream unavailable"
