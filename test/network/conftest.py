"""
conftest.py

Fixtures wiring the fake devices (fake_devices.py) to a gateway app.
"""

import socket
import threading

import pytest

from common.config import GatewayConfig
from network.GatewayServer import create_app
from fake_devices import DeviceServer, make_camera_app, make_controller_app


@pytest.fixture
def controller():
    state = {"calls": [], "hold": {}}
    device = DeviceServer(make_controller_app(state)).start()
    device.state = state
    yield device
    for event in state["hold"].values():
        event.set()
    device.stop()


@pytest.fixture
def camera():
    state = {
        "first_sent": threading.Event(),
        "release": threading.Event(),
        "closed": threading.Event(),
        "frames": 3,
        "endless": False,
        "interval": 0.02,
        "content_type": "image/jpeg",
    }
    device = DeviceServer(make_camera_app(state)).start()
    device.state = state
    yield device
    state["release"].set()
    device.stop()


@pytest.fixture
def dead_address():
    """host:port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"127.0.0.1:{port}"


@pytest.fixture
def make_gateway():
    """Factory for a gateway Flask app pointed at the given device addresses."""
    def factory(controller_address, camera_address, **overrides):
        cfg = {
            "controllerAddress": controller_address,
            "cameraAddress": camera_address,
            "connectTimeout": 2,
            "idleTimeout": 5,
        }
        cfg.update(overrides)
        return create_app(GatewayConfig.from_dict(cfg))
    return factory
