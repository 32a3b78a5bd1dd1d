"""
GatewayServer.py
=================
Flask HTTP gateway between the client app and the car's embedded devices.

The client app (mobile app or browser) only ever talks to this server. The
server forwards motor, valve, and sensor commands to the car controller and
relays the live MJPEG feed from the camera board. Both device addresses are
fixed for the life of the process; restart to point at new ones.

----------------------------------------------------------
Example Usage:
---------------
$ python -m network.GatewayServer --car-ip 192.168.4.1 --cam-ip 192.168.1.100

→ Once started, the client app points its backend URL at:
    http://<gateway_ip>:3000/api

GET http://<gateway_ip>:3000/api/forward
→ forwarded to GET http://192.168.4.1/forward

----------------------------------------------------------
API Endpoints:
---------------
GET /api/status          - Gateway liveness and the configured device addresses
GET /api/sensor          - Controller /sensor, passed through
GET /api/<motor>         - forward | backward | left | right | stop
GET /api/<valve>         - valve1_on | valve1_off | valve2_on | valve2_off
GET /api/stream          - Camera /stream, relayed as multipart MJPEG
GET /                    - Dashboard page with the live stream embedded

----------------------------------------------------------
Notes:
------
- Requires Flask, Flask-CORS and requests
- Command failures answer 500 with JSON {"error": "..."}; the stream answers
  500 with plain text so an <img> fallback can show it
- The server runs one thread per connection (threaded=True), so a hung
  device only ties up the requests waiting on it
- Optional static assets are served verbatim from --static-dir

----------------------------------------------------------
"""

import argparse
import logging
import os
import sys

from flask import Flask, jsonify, render_template_string, request
from flask_cors import CORS

from common.config import (
    API_PREFIX,
    CORS_ALLOWED_HEADERS,
    CORS_METHODS,
    CORS_ORIGIN,
    GatewayConfig,
    load_config,
)
from common.errors import RouteNotFound
from common.route_table import build_route_table
from common.upstream_registry import UpstreamRegistry
from gatewayCommon.ProxyEngine import InboundRequest, ProxyEngine
from gatewayCommon.StatusReporter import StatusReporter
from gatewayCommon.StreamRelay import StreamRelay

logger = logging.getLogger(__name__)

DASHBOARD_TEMPLATE = """<html>
  <head><title>ESP32 Control Backend</title></head>
  <body>
    <h1>Backend Running on Port {{ port }}</h1>
    <p>Client app should connect to <code>http://YOUR_IP:{{ port }}{{ api_prefix }}</code></p>
    <p>Car IP: {{ car_ip }} | Cam IP: {{ cam_ip }}</p>
    <img src="{{ api_prefix }}/stream" style="width:100%; max-width:640px; height:auto;">
  </body>
</html>
"""

#----------------------------------------------------------

def create_app(config: GatewayConfig) -> Flask:
    """
    Builds the gateway Flask app.

    Registry, route table, engines and status reporter are created once here
    and captured by the views; nothing is stored in module globals.

    Raises:
        UnknownUpstream: If the route table references an unregistered device
    """
    registry = UpstreamRegistry.from_config(config)
    routes = build_route_table(registry)
    engine = ProxyEngine(config)
    relay = StreamRelay(config)
    reporter = StatusReporter(registry)

    static_folder = os.path.abspath(config.static_dir) if config.static_dir else None
    app = Flask(__name__, static_folder=static_folder, static_url_path="")
    app.extensions["gateway"] = {
        "config": config,
        "registry": registry,
        "routes": routes,
        "engine": engine,
        "relay": relay,
        "reporter": reporter,
    }

    # Registered before CORS() so flask-cors runs first on preflights.
    @app.after_request
    def inject_cors_origin(response):
        response.headers.setdefault("Access-Control-Allow-Origin", CORS_ORIGIN)
        return response

    CORS(app,
         resources={r"/*": {"origins": CORS_ORIGIN}},
         send_wildcard=True,
         methods=CORS_METHODS,
         allow_headers=CORS_ALLOWED_HEADERS)

    #----------------------------------------------------------

    @app.route(f"{API_PREFIX}/status", methods=["GET"])
    def status():
        """
        Returns gateway liveness and the configured device addresses.

        Returns:
          - 200: {"status": "OK", "timestamp": "...Z", "car_ip": "...", "cam_ip": "..."}

        Notes:
          - Never contacts the devices, so it answers even when both are offline
        """
        return jsonify(reporter.status()), 200

    #----------------------------------------------------------

    @app.route(f"{API_PREFIX}/<path:name>", methods=["GET"])
    def proxy(name):
        """
        Forwards a command, sensor, or stream request to its device.

        The route table decides the device and the rewritten path
        (/api/<name> -> /<name>). The query string is passed through, and
        HEAD is forwarded as HEAD to the same device path.

        Returns:
          - upstream status and body, with Access-Control-Allow-Origin: *
          - 500: JSON {"error": "Proxy error for <name>"} if the controller is unreachable
          - 500: "Stream unavailable" if the camera is unreachable
          - 503: "Stream busy" if every stream slot is taken
          - 404: JSON {"error": ...} for unknown names
        """
        route = routes.match(request.method, request.path)
        if route is None:
            raise RouteNotFound(request.method, request.path)
        handler = relay if route.streaming else engine
        result = handler.forward(InboundRequest.from_flask(request), route)
        return handler.respond(result)

    @app.errorhandler(RouteNotFound)
    def route_not_found(e):
        return jsonify({"error": str(e)}), 404

    #----------------------------------------------------------

    @app.route("/", methods=["GET"])
    def dashboard():
        """Minimal status page with the live camera feed embedded."""
        return render_template_string(
            DASHBOARD_TEMPLATE,
            port=config.port,
            api_prefix=API_PREFIX,
            car_ip=config.controller_address,
            cam_ip=config.camera_address,
        )

    logger.debug(f"[Gateway] Registered routes: {', '.join(routes.paths())}")
    return app

#----------------------------------------------------------

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="HTTP gateway for the car controller and camera boards.")
    parser.add_argument("--config", help="JSON config file (camelCase keys)")
    parser.add_argument("--car-ip", help="Controller address, host[:port]")
    parser.add_argument("--cam-ip", help="Camera address, host[:port]")
    parser.add_argument("--host", help="Listen interface (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Listen port (default: 3000)")
    parser.add_argument("--static-dir", help="Directory of static assets to serve")
    parser.add_argument("--verbose", action="store_true", default=None,
                        help="Enable debug output")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config, overrides={
            "controllerAddress": args.car_ip,
            "cameraAddress": args.cam_ip,
            "host": args.host,
            "port": args.port,
            "staticDir": args.static_dir,
            "verbose": args.verbose,
        })
    except ValueError as e:
        print(f"[Gateway] Invalid configuration: {e}", file=sys.stderr)
        return 2

    app = create_app(config)

    print(f"[Gateway] Backend running at http://localhost:{config.port}")
    print(f"[Gateway] Car IP: {config.controller_address} | Cam IP: {config.camera_address}")
    print(f"[Gateway] Client app: set backend URL to 'http://YOUR_PC_IP:{config.port}{API_PREFIX}'")
    app.run(host=config.host, port=config.port, threaded=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
