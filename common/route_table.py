"""
common/route_table.py

Static mapping from public gateway paths to upstream device paths.

The table is built once at startup by walking the fixed command lists; each
entry carries its upstream, the rewritten path, and the header policy applied
to the relayed response. Matching is exact-path equality.

Usage:
    registry = UpstreamRegistry.from_config(config)
    table = build_route_table(registry)
    entry = table.match("GET", "/api/forward")
"""
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from common.config import (
    API_PREFIX,
    CORS_ORIGIN,
    MOTOR_COMMANDS,
    SENSOR_COMMAND,
    STREAM_CACHE_CONTROL,
    STREAM_COMMAND,
    STREAM_CONTENT_TYPE,
    STREAM_EXTRA_HEADERS,
    VALVE_COMMANDS,
)
from common.errors import UnknownUpstream
from common.upstream_registry import UpstreamName, UpstreamRegistry, UpstreamTarget


@dataclass(frozen=True)
class ResponsePolicy:
    """Headers forced onto a relayed response, overriding whatever the upstream sent."""
    cors_origin: str = CORS_ORIGIN
    cache_control: Optional[str] = None
    content_type_override: Optional[str] = None
    extra_headers: Tuple[Tuple[str, str], ...] = ()

    def overrides(self) -> List[Tuple[str, str]]:
        headers = [("Access-Control-Allow-Origin", self.cors_origin)]
        if self.cache_control is not None:
            headers.append(("Cache-Control", self.cache_control))
        if self.content_type_override is not None:
            headers.append(("Content-Type", self.content_type_override))
        headers.extend(self.extra_headers)
        return headers

    def apply(self, headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
        """Returns a new header list with the policy values replacing any upstream values."""
        overrides = self.overrides()
        replaced = {name.lower() for name, _ in overrides}
        kept = [(name, value) for name, value in headers if name.lower() not in replaced]
        return kept + overrides


@dataclass(frozen=True)
class RouteEntry:
    name: str
    public_path: str
    upstream: UpstreamTarget
    upstream_path: str
    method: str = "GET"
    policy: ResponsePolicy = field(default_factory=ResponsePolicy)
    streaming: bool = False

    @property
    def upstream_url(self) -> str:
        return self.upstream.url_for(self.upstream_path)


COMMAND_POLICY = ResponsePolicy()
STREAM_POLICY = ResponsePolicy(
    cache_control=STREAM_CACHE_CONTROL,
    content_type_override=STREAM_CONTENT_TYPE,
    extra_headers=STREAM_EXTRA_HEADERS,
)


class RouteTable:
    """Ordered, read-only collection of RouteEntry keyed by public path."""

    def __init__(self, entries, registry: UpstreamRegistry):
        by_path: Dict[str, RouteEntry] = {}
        for entry in entries:
            if entry.public_path in by_path:
                raise ValueError(f"Duplicate public path: {entry.public_path}")
            if entry.upstream not in registry:
                raise UnknownUpstream(entry.upstream.name.value)
            by_path[entry.public_path] = entry
        self._entries = tuple(by_path.values())
        self._by_path = by_path

    def match(self, method: str, path: str) -> Optional[RouteEntry]:
        entry = self._by_path.get(path)
        method = method.upper()
        # HEAD is served by GET routes, as Flask does for its own rules
        if method == "HEAD":
            method = "GET"
        if entry is None or entry.method != method:
            return None
        return entry

    def paths(self) -> List[str]:
        return [entry.public_path for entry in self._entries]

    def __iter__(self) -> Iterator[RouteEntry]:
        return iter(self._entries)

    def __len__(self):
        return len(self._entries)

    def __eq__(self, other):
        if not isinstance(other, RouteTable):
            return NotImplemented
        return self._entries == other._entries


def _command_entry(name: str, upstream: UpstreamTarget, prefix: str) -> RouteEntry:
    return RouteEntry(
        name=name,
        public_path=f"{prefix}/{name}",
        upstream=upstream,
        upstream_path=f"/{name}",
        policy=COMMAND_POLICY,
    )


def build_route_table(registry: UpstreamRegistry, prefix: str = API_PREFIX) -> RouteTable:
    """
    Builds the gateway's route table from the fixed command lists.

    Pure function of its inputs: no I/O, and calling it twice with the same
    registry yields equal tables.

    Raises:
        UnknownUpstream: If the registry lacks the controller or camera.
    """
    controller = registry.resolve(UpstreamName.CONTROLLER)
    camera = registry.resolve(UpstreamName.CAMERA)

    entries = [_command_entry(SENSOR_COMMAND, controller, prefix)]
    entries.extend(_command_entry(name, controller, prefix) for name in MOTOR_COMMANDS)
    entries.extend(_command_entry(name, controller, prefix) for name in VALVE_COMMANDS)
    entries.append(RouteEntry(
        name=STREAM_COMMAND,
        public_path=f"{prefix}/{STREAM_COMMAND}",
        upstream=camera,
        upstream_path=f"/{STREAM_COMMAND}",
        policy=STREAM_POLICY,
        streaming=True,
    ))
    return RouteTable(entries, registry)
