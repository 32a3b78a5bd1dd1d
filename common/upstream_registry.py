"""
common/upstream_registry.py

Holds the network addresses of the two devices the gateway forwards to.
Tracks each upstream's name, host, and scheme.

Usage:
- Built once at startup from the GatewayConfig.
- The route table and status reporter resolve upstreams through it.

The registry never changes after construction, so it is shared between
request threads without locking.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterable

from common.errors import UnknownUpstream


class UpstreamName(str, Enum):
    """The two embedded devices behind the gateway."""
    CONTROLLER = "controller"   # Motor/valve controller ("car")
    CAMERA = "camera"           # MJPEG camera board ("cam")


@dataclass(frozen=True)
class UpstreamTarget:
    """Represents a single upstream device."""
    name: UpstreamName
    host: str
    scheme: str = "http"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def url_for(self, path: str) -> str:
        """Absolute URL for a path in the device's own path space."""
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path


class UpstreamRegistry:
    def __init__(self, targets: Iterable[UpstreamTarget]):
        nodes = {}
        for target in targets:
            if target.name in nodes:
                raise ValueError(f"Upstream '{target.name.value}' registered twice.")
            nodes[target.name] = target
        self._targets = MappingProxyType(nodes)

    @classmethod
    def from_config(cls, config) -> "UpstreamRegistry":
        """Registers the controller and camera addresses from a GatewayConfig."""
        return cls([
            UpstreamTarget(UpstreamName.CONTROLLER, config.controller_address),
            UpstreamTarget(UpstreamName.CAMERA, config.camera_address),
        ])

    def resolve(self, name) -> UpstreamTarget:
        """
        Retrieves an upstream by name.
        Raises UnknownUpstream if it was never registered.
        """
        try:
            key = UpstreamName(name)
        except ValueError:
            raise UnknownUpstream(name)
        target = self._targets.get(key)
        if target is None:
            raise UnknownUpstream(key.value)
        return target

    def __contains__(self, target) -> bool:
        if isinstance(target, UpstreamTarget):
            return self._targets.get(target.name) == target
        try:
            return UpstreamName(target) in self._targets
        except ValueError:
            return False

    def __iter__(self):
        return iter(self._targets.values())

    def __len__(self):
        return len(self._targets)

    def to_dict(self) -> Dict[str, str]:
        """Upstream name -> configured host, as reported by /api/status."""
        return {name.value: target.host for name, target in self._targets.items()}
