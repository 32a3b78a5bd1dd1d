"""
test_proxy_engine.py

Test suite for ProxyEngine with the upstream `requests` call mocked out.

This test suite validates:
- Path rewrite, method and query string preservation, Host handling
- Status, header and body relay for successful forwards
- CORS injection regardless of upstream headers
- 500 JSON errors for unreachable upstreams
- Mid-body upstream drops and early client disconnects closing the upstream
- Raw query bytes reaching the upstream percent-encoded exactly once

To run these tests:
    pytest test/gatewayCommon/test_proxy_engine.py -v
"""

import json
import pytest
from unittest.mock import Mock, patch

import requests
from requests.structures import CaseInsensitiveDict

from common.config import GatewayConfig
from common.errors import UpstreamUnreachable
from common.route_table import build_route_table
from common.upstream_registry import UpstreamRegistry
from gatewayCommon.ProxyEngine import InboundRequest, ProxyEngine, ProxyResult


def make_upstream(status=200, headers=None, chunks=(b'{"ok": true}',), error=None):
    """Mock requests.Response whose body arrives in the given chunks."""
    upstream = Mock()
    upstream.status_code = status
    upstream.headers = CaseInsensitiveDict(
        headers if headers is not None else {'Content-Type': 'application/json'})

    def iter_content(chunk_size=1):
        for chunk in chunks:
            yield chunk
        if error is not None:
            raise error

    upstream.iter_content.side_effect = iter_content
    return upstream


@pytest.fixture
def config():
    return GatewayConfig(controller_address='192.168.4.1', camera_address='192.168.1.100')


@pytest.fixture
def routes(config):
    return build_route_table(UpstreamRegistry.from_config(config))


@pytest.fixture
def engine(config):
    return ProxyEngine(config)


def inbound(path, query='', headers=None):
    return InboundRequest(method='GET', path=path, query_string=query, headers=headers or {})


class TestForwardRequest:
    """Test what the engine sends upstream."""

    @patch('requests.request')
    def test_rewrites_path_and_keeps_query(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream()
        route = routes.match('GET', '/api/forward')

        engine.forward(inbound('/api/forward', 'speed=5&x=1'), route)

        mock_request.assert_called_once()
        args, kwargs = mock_request.call_args
        assert args == ('GET', 'http://192.168.4.1/forward?speed=5&x=1')
        assert kwargs['timeout'] == (5.0, 10.0)
        assert kwargs['stream'] is True
        assert kwargs['allow_redirects'] is False

    @patch('requests.request')
    def test_no_query_string(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream()
        engine.forward(inbound('/api/valve2_off'), routes.match('GET', '/api/valve2_off'))

        args, _ = mock_request.call_args
        assert args[1] == 'http://192.168.4.1/valve2_off'

    @patch('requests.request')
    def test_client_host_not_forwarded(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream()
        headers = {
            'Host': 'gateway.local:3000',
            'User-Agent': 'car-app/1.0',
            'Connection': 'keep-alive',
            'Keep-Alive': 'timeout=5',
            'Accept': 'application/json',
        }

        engine.forward(inbound('/api/left', headers=headers), routes.match('GET', '/api/left'))

        sent = mock_request.call_args.kwargs['headers']
        assert 'Host' not in sent
        assert 'Keep-Alive' not in sent
        assert sent['Connection'] == 'close'
        assert sent['User-Agent'] == 'car-app/1.0'
        assert sent['Accept'] == 'application/json'

    def test_build_url(self, engine, routes):
        route = routes.match('GET', '/api/sensor')
        assert engine.build_url(inbound('/api/sensor'), route) == 'http://192.168.4.1/sensor'
        assert engine.build_url(inbound('/api/sensor', 'id=2'), route) == 'http://192.168.4.1/sensor?id=2'


class TestRelayResponse:
    """Test what the engine hands back to the client."""

    @patch('requests.request')
    def test_status_body_and_cors(self, mock_request, engine, routes):
        upstream = make_upstream(status=202, headers={'Content-Type': 'text/plain', 'X-Device': 'esp32'},
                                 chunks=(b'moving ', b'forward'))
        mock_request.return_value = upstream

        result = engine.forward(inbound('/api/forward'), routes.match('GET', '/api/forward'))

        assert result.ok
        assert result.status == 202
        assert result.header('Access-Control-Allow-Origin') == '*'
        assert result.header('X-Device') == 'esp32'
        assert result.header('Content-Type') == 'text/plain'
        assert b''.join(result.body) == b'moving forward'
        upstream.close.assert_called()

    @patch('requests.request')
    def test_upstream_cors_replaced(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream(
            headers={'Access-Control-Allow-Origin': 'http://other.example'})

        result = engine.forward(inbound('/api/stop'), routes.match('GET', '/api/stop'))

        origins = [v for k, v in result.headers if k.lower() == 'access-control-allow-origin']
        assert origins == ['*']

    @patch('requests.request')
    def test_upstream_error_status_passed_through(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream(status=404, chunks=(b'not found',))

        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        assert result.ok
        assert result.status == 404
        assert b''.join(result.body) == b'not found'

    @patch('requests.request')
    def test_hop_by_hop_headers_dropped(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream(headers={
            'Transfer-Encoding': 'chunked',
            'Connection': 'close',
            'Content-Length': '12',
            'Content-Type': 'application/json',
        })

        result = engine.forward(inbound('/api/right'), routes.match('GET', '/api/right'))

        assert result.header('Transfer-Encoding') is None
        assert result.header('Connection') is None
        assert result.header('Content-Length') == '12'

    @patch('requests.request')
    def test_decoded_body_drops_length_and_encoding(self, mock_request, engine, routes):
        mock_request.return_value = make_upstream(headers={
            'Content-Encoding': 'gzip',
            'Content-Length': '30',
            'Content-Type': 'application/json',
        })

        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        assert result.header('Content-Encoding') is None
        assert result.header('Content-Length') is None
        assert result.header('Content-Type') == 'application/json'

    @patch('requests.request')
    def test_respond_builds_flask_response(self, mock_request, engine, routes):
        upstream = make_upstream(chunks=(b'{"distance": ', b'42}'))
        mock_request.return_value = upstream
        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        response = engine.respond(result)

        assert response.status_code == 200
        assert response.headers['Access-Control-Allow-Origin'] == '*'
        assert b''.join(response.response) == b'{"distance": 42}'
        response.close()
        assert result.closed


class TestUpstreamFailures:
    """Test error conversion at the session boundary."""

    @pytest.mark.parametrize('exc', [
        requests.exceptions.ConnectionError('refused'),
        requests.exceptions.ConnectTimeout('connect timed out'),
        requests.exceptions.ReadTimeout('no headers'),
        requests.exceptions.InvalidURL('bad host'),
    ])
    @patch('requests.request')
    def test_unreachable_returns_json_500(self, mock_request, exc, engine, routes):
        mock_request.side_effect = exc

        result = engine.forward(inbound('/api/backward'), routes.match('GET', '/api/backward'))

        assert not result.ok
        assert isinstance(result.error, UpstreamUnreachable)
        assert result.error.upstream == 'controller'
        assert result.status == 500
        assert result.header('Content-Type') == 'application/json'
        assert result.header('Access-Control-Allow-Origin') == '*'
        assert json.loads(result.body) == {'error': 'Proxy error for backward'}

    @patch('requests.request')
    def test_error_response(self, mock_request, engine, routes):
        mock_request.side_effect = requests.exceptions.ConnectionError('refused')
        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        response = engine.respond(result)

        assert response.status_code == 500
        assert json.loads(response.get_data()) == {'error': 'Proxy error for sensor'}

    @patch('requests.request')
    def test_mid_body_reset_ends_body(self, mock_request, engine, routes):
        upstream = make_upstream(chunks=(b'part1', b'part2'),
                                 error=requests.exceptions.ChunkedEncodingError('connection reset'))
        mock_request.return_value = upstream

        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        assert b''.join(result.body) == b'part1part2'
        upstream.close.assert_called()

    @patch('requests.request')
    def test_client_disconnect_closes_upstream(self, mock_request, engine, routes):
        upstream = make_upstream(chunks=(b'a', b'b', b'c'))
        mock_request.return_value = upstream
        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        body = iter(result.body)
        assert next(body) == b'a'
        body.close()

        upstream.close.assert_called()

    @patch('requests.request')
    def test_close_before_body_started(self, mock_request, engine, routes):
        upstream = make_upstream()
        mock_request.return_value = upstream
        result = engine.forward(inbound('/api/sensor'), routes.match('GET', '/api/sensor'))

        result.close()

        upstream.close.assert_called_once()


class TestProxyResult:

    def test_close_runs_callbacks_once(self, routes):
        route = routes.match('GET', '/api/stop')
        result = ProxyResult(route, 200, [])
        callback = Mock()
        result.on_close(callback)

        result.close()
        result.close()

        callback.assert_called_once()
        assert result.closed

    def test_failing_callback_does_not_skip_the_rest(self, routes):
        route = routes.match('GET', '/api/stream')
        result = ProxyResult(route, 200, [])
        failing = Mock(side_effect=OSError('socket already gone'))
        release = Mock()
        result.on_close(failing)
        result.on_close(release)

        result.close()

        failing.assert_called_once()
        release.assert_called_once()
        assert result.closed


class TestInboundRequest:

    def test_from_flask_percent_encodes_raw_query_bytes(self):
        request = Mock()
        request.method = 'GET'
        request.path = '/api/forward'
        request.query_string = b'q=\xc3\xa9&dir=%2F up&speed=3'
        request.headers = {'User-Agent': 'car-app/1.0'}

        inbound_request = InboundRequest.from_flask(request)

        # Existing escapes and separators are left as the client sent them
        assert inbound_request.query_string == 'q=%C3%A9&dir=%2F%20up&speed=3'
        assert inbound_request.headers == {'User-Agent': 'car-app/1.0'}

    def test_from_flask_plain_query_unchanged(self):
        request = Mock()
        request.method = 'GET'
        request.path = '/api/sensor'
        request.query_string = b'id=2&unit=cm'
        request.headers = {}

        assert InboundRequest.from_flask(request).query_string == 'id=2&unit=cm'
