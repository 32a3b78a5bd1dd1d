"""
common/config.py

Shared constants and the gateway configuration object.

The two device addresses and the listen port are supplied once at process
start (JSON file, environment, or command line) and frozen into a
GatewayConfig that is passed to every component. Nothing here is mutated
after startup; changing an address requires a restart.

Usage:
    from common.config import GatewayConfig, load_config

    config = load_config("gateway.json", overrides={"cameraAddress": "192.168.1.120"})
"""

import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


# =============================================================================
# Network Defaults
# =============================================================================

DEFAULT_CONTROLLER_IP = "192.168.4.1"    # Car controller (AP mode)
DEFAULT_CAMERA_IP = "192.168.1.100"      # Camera board on home WiFi
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000


# =============================================================================
# Upstream Timeouts & Buffering
# =============================================================================

CONNECT_TIMEOUT = 5.0        # Seconds to establish the upstream TCP connection
IDLE_TIMEOUT = 10.0          # Max seconds between upstream reads
CHUNK_SIZE = 4096            # Bytes relayed per read
MAX_STREAM_SESSIONS = 4      # Concurrent camera relays (0 = unlimited)


# =============================================================================
# Routes
# =============================================================================

API_PREFIX = "/api"

MOTOR_COMMANDS = ("forward", "backward", "left", "right", "stop")
VALVE_COMMANDS = ("valve1_on", "valve1_off", "valve2_on", "valve2_off")
SENSOR_COMMAND = "sensor"
STREAM_COMMAND = "stream"


# =============================================================================
# Response Headers
# =============================================================================

CORS_ORIGIN = "*"
CORS_METHODS = ["GET", "POST", "OPTIONS"]
CORS_ALLOWED_HEADERS = ["Content-Type", "User-Agent"]

STREAM_BOUNDARY = "123456789000000000000987654321"
STREAM_CONTENT_TYPE = f"multipart/x-mixed-replace; boundary={STREAM_BOUNDARY}"
STREAM_CACHE_CONTROL = "no-cache, no-store, must-revalidate"
STREAM_EXTRA_HEADERS = (("Pragma", "no-cache"), ("Expires", "0"))


# =============================================================================
# Environment Variables
# =============================================================================

ENV_CONTROLLER = "GATEWAY_CAR_IP"
ENV_CAMERA = "GATEWAY_CAM_IP"
ENV_PORT = "GATEWAY_PORT"

# cfg-dict key -> GatewayConfig field
_CFG_KEYS = {
    "controllerAddress": "controller_address",
    "cameraAddress": "camera_address",
    "host": "host",
    "port": "port",
    "connectTimeout": "connect_timeout",
    "idleTimeout": "idle_timeout",
    "chunkSize": "chunk_size",
    "maxStreamSessions": "max_stream_sessions",
    "staticDir": "static_dir",
    "verbose": "verbose",
}


@dataclass(frozen=True)
class GatewayConfig:
    """Immutable runtime configuration for one gateway process."""

    controller_address: str = DEFAULT_CONTROLLER_IP
    camera_address: str = DEFAULT_CAMERA_IP
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    connect_timeout: float = CONNECT_TIMEOUT
    idle_timeout: float = IDLE_TIMEOUT
    chunk_size: int = CHUNK_SIZE
    max_stream_sessions: int = MAX_STREAM_SESSIONS
    static_dir: Optional[str] = None
    verbose: bool = False

    def __post_init__(self):
        for field in ("controller_address", "camera_address"):
            value = getattr(self, field)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{field} must be a non-empty host string.")
            if "://" in value or "/" in value:
                raise ValueError(f"{field} must be a bare host[:port], got '{value}'.")
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        if self.connect_timeout <= 0 or self.idle_timeout <= 0:
            raise ValueError("Timeouts must be positive.")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive.")
        if self.max_stream_sessions < 0:
            raise ValueError("max_stream_sessions cannot be negative.")

    @classmethod
    def from_dict(cls, cfg: Mapping[str, Any]) -> "GatewayConfig":
        """
        Builds a config from a framework-style cfg dict.

        Args:
            cfg (dict): camelCase keys such as 'controllerAddress',
                'cameraAddress', 'port', 'connectTimeout'. Missing keys
                keep their defaults.

        Raises:
            ValueError: On unknown keys or invalid values.
        """
        unknown = set(cfg) - set(_CFG_KEYS)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        kwargs = {_CFG_KEYS[key]: value for key, value in cfg.items() if value is not None}
        try:
            if "port" in kwargs:
                kwargs["port"] = int(kwargs["port"])
            for key in ("connect_timeout", "idle_timeout"):
                if key in kwargs:
                    kwargs[key] = float(kwargs[key])
            for key in ("chunk_size", "max_stream_sessions"):
                if key in kwargs:
                    kwargs[key] = int(kwargs[key])
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid numeric configuration value: {e}")
        return cls(**kwargs)


def _read_config_file(path: str) -> Dict[str, Any]:
    """Load a JSON config file; a missing file is an error, not a silent default."""
    if not os.path.exists(path):
        raise ValueError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Config file {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object.")
    return data


def _read_environment(environ: Mapping[str, str]) -> Dict[str, Any]:
    cfg = {}
    if environ.get(ENV_CONTROLLER):
        cfg["controllerAddress"] = environ[ENV_CONTROLLER]
    if environ.get(ENV_CAMERA):
        cfg["cameraAddress"] = environ[ENV_CAMERA]
    if environ.get(ENV_PORT):
        cfg["port"] = environ[ENV_PORT]
    return cfg


def load_config(path: Optional[str] = None,
                overrides: Optional[Mapping[str, Any]] = None,
                environ: Optional[Mapping[str, str]] = None) -> GatewayConfig:
    """
    Resolves the gateway configuration once at startup.

    Precedence (lowest to highest): built-in defaults, JSON file,
    GATEWAY_* environment variables, explicit overrides (command line).

    Args:
        path (str, optional): JSON file with camelCase keys
        overrides (dict, optional): cfg-dict values that win over everything
        environ (mapping, optional): environment to read (default: os.environ)

    Returns:
        GatewayConfig: frozen configuration

    Raises:
        ValueError: If the file or any value is invalid
    """
    cfg: Dict[str, Any] = {}
    if path:
        cfg.update(_read_config_file(path))
    cfg.update(_read_environment(os.environ if environ is None else environ))
    if overrides:
        cfg.update({key: value for key, value in overrides.items() if value is not None})
    return GatewayConfig.from_dict(cfg)
