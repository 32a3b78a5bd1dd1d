"""
StatusReporter.py

Gateway liveness report for GET /api/status.

Reports static data only (the configured device addresses plus the current
time), so it answers even when both devices are offline.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from common.upstream_registry import UpstreamName, UpstreamRegistry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing 'Z'."""
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StatusReporter:
    def __init__(self, registry: UpstreamRegistry, clock: Optional[Callable[[], datetime]] = None):
        hosts = registry.to_dict()
        self.car_ip = hosts[UpstreamName.CONTROLLER.value]
        self.cam_ip = hosts[UpstreamName.CAMERA.value]
        self.clock = clock or _utc_now

    def status(self) -> Dict[str, Any]:
        return {
            "status": "OK",
            "timestamp": iso_timestamp(self.clock()),
            "car_ip": self.car_ip,
            "cam_ip": self.cam_ip,
        }
