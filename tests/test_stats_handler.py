import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import SimpleNamespace
from unittest import mock

import pytest
import requests

from resticop.stats import GaugeVec
from resticop.stats_handler import SUBSYSTEM, StatsError, StatsHandler


class _Hook:
    def __init__(self, payload):
        self.payload = payload
        self.calls = 0

    def to_json(self):
        self.calls += 1
        return self.payload


class _Prom:
    def __init__(self, collectors):
        self.collectors = collectors
        self.calls = 0

    def to_prom(self):
        self.calls += 1
        return self.collectors


@dataclass
class _Request:
    method: str
    path: str
    content_type: str
    body: bytes


@pytest.fixture
def server():
    received = []
    state = {"status": 200}

    class Handler(BaseHTTPRequestHandler):
        def _handle(self):
            length = int(self.headers.get("Content-Length", 0))
            body = self.rfile.read(length) if length else b""
            received.append(
                _Request(self.command, self.path, self.headers.get("Content-Type", ""), body)
            )
            self.send_response(state["status"])
            self.send_header("Content-Length", "0")
            self.end_headers()

        do_POST = _handle
        do_PUT = _handle

        def log_message(self, *args):
            pass

    httpd = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    port = httpd.server_address[1]
    yield SimpleNamespace(
        url=f"http://127.0.0.1:{port}",
        address=f"127.0.0.1:{port}",
        received=received,
        state=state,
    )
    httpd.shutdown()
    httpd.server_close()
    thread.join()


def _response(status_code, reason="OK"):
    response = mock.Mock()
    response.status_code = status_code
    response.reason = reason
    return response


def test_webhook_skipped_without_url(server):
    hook = _Hook(b"")
    # Empty data would be an error if the webhook were sent at all.
    StatsHandler(server.url, "host", "").send_webhook(hook)
    assert hook.calls == 0
    assert server.received == []


def test_webhook_posts_json(server):
    hook = _Hook(b'{"a":1}')
    StatsHandler("", "host", f"{server.url}/hook").send_webhook(hook)
    assert hook.calls == 1
    assert len(server.received) == 1
    request = server.received[0]
    assert request.method == "POST"
    assert request.path == "/hook"
    assert request.body == b'{"a":1}'
    assert request.content_type == "application/json"


@mock.patch("resticop.stats_handler.requests.post")
def test_webhook_empty_data_raises(post):
    with pytest.raises(StatsError, match="webhook data is empty"):
        StatsHandler("", "host", "http://hook.example.com/").send_webhook(_Hook(b""))
    assert post.call_count == 0


@mock.patch("resticop.stats_handler.requests.post")
def test_webhook_non_200_raises(post):
    post.return_value = _response(500, "Internal Server Error")
    with pytest.raises(StatsError, match="500"):
        StatsHandler("", "host", "http://hook.example.com/").send_webhook(_Hook(b"{}"))


def test_webhook_error_status_from_server_raises(server):
    server.state["status"] = 500
    with pytest.raises(StatsError, match="500"):
        StatsHandler("", "host", f"{server.url}/hook").send_webhook(_Hook(b"{}"))
    assert len(server.received) == 1


@mock.patch("resticop.stats_handler.requests.post")
def test_webhook_connection_error_raises(post):
    post.side_effect = requests.ConnectionError("refused")
    with pytest.raises(StatsError, match="http status unavailable"):
        StatsHandler("", "host", "http://hook.example.com/").send_webhook(_Hook(b"{}"))


def test_prometheus_skipped_without_url(server):
    provider = _Prom([GaugeVec("x", "help")])
    StatsHandler("", "host", server.url).send_prometheus(provider)
    assert provider.calls == 0
    assert server.received == []


@mock.patch("resticop.stats_handler.requests.post")
def test_prometheus_pushes_each_collector(post):
    post.return_value = _response(200)
    first = GaugeVec("first", "help")
    second = GaugeVec("second", "help")
    StatsHandler("http://push.example.com", "host1", "").send_prometheus(_Prom([first, second]))
    assert post.call_count == 2
    urls = [call.args[0] for call in post.call_args_list]
    assert all(url.startswith("http://push.example.com/metrics/") for url in urls)
    assert all(f"/job/{SUBSYSTEM}/" in url for url in urls)
    assert all(url.endswith("/instance/host1") for url in urls)
    bodies = [call.kwargs["data"].decode() for call in post.call_args_list]
    assert first.name in bodies[0]
    assert second.name in bodies[1]


def test_prometheus_url_without_scheme_and_trailing_slash(server):
    gauge = GaugeVec("x", "help")
    StatsHandler(f"{server.address}/", "host1", "").send_prometheus(_Prom([gauge]))
    assert len(server.received) == 1
    path = server.received[0].path
    assert path.startswith("/metrics/")
    assert "//metrics" not in path
    assert path.endswith("/instance/host1")
    assert gauge.name in server.received[0].body.decode()


def test_prometheus_hostname_with_slash_is_base64(server):
    StatsHandler(server.url, "a/b", "").send_prometheus(_Prom([GaugeVec("x", "help")]))
    assert len(server.received) == 1
    assert "/instance@base64/" in server.received[0].path


@mock.patch("resticop.stats_handler.requests.post")
def test_prometheus_error_status_raises(post):
    post.return_value = _response(400, "Bad Request")
    with pytest.raises(StatsError, match="400"):
        StatsHandler("http://push.example.com", "host", "").send_prometheus(
            _Prom([GaugeVec("x", "help")])
        )