from __future__ import annotations

import pytest
import requests

from edgegen.hub import TransportError
from edgegen.relay import EXECUTE_GET, EXECUTE_POST, HttpRelay, RestRequest, run
from edgegen.runtime import StopSignal


def _response(status: int, body: str, url: str) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r._content = body.encode("utf-8")
    r.encoding = "utf-8"
    r.url = url
    return r


class FakeSession:
    def __init__(self, status: int = 200, body: str = "ok", error: Exception = None) -> None:
        self.status = status
        self.body = body
        self.error = error
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append(("GET", url, None, None, timeout))
        return self._reply(url)

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(("POST", url, data, headers, timeout))
        return self._reply(url)

    def _reply(self, url):
        if self.error is not None:
            raise self.error
        return _response(self.status, self.body, url)


def test_rest_request_keys_are_case_insensitive():
    assert RestRequest.from_payload({"Url": "http://x", "RequestPayload": "{}"}) == RestRequest("http://x", "{}")
    assert RestRequest.from_payload('{"url": "http://y"}') == RestRequest("http://y", "")
    assert RestRequest.from_payload({"url": "http://z", "requestPayload": {"a": 1}}).request_payload == '{"a": 1}'
    assert RestRequest.from_payload(None) == RestRequest()
    assert RestRequest.from_payload("not json") == RestRequest()


def test_execute_get_returns_body():
    session = FakeSession(body='{"status": "green"}')
    relay = HttpRelay(timeout_seconds=7, session=session)

    resp = relay.execute_get({"url": "http://plc.local/status"})

    assert resp.status == 200
    assert resp.payload == {"clientUrl": "http://plc.local/status", "clientResponse": '{"status": "green"}'}
    assert session.calls == [("GET", "http://plc.local/status", None, None, 7.0)]


def test_execute_post_sends_json_payload():
    session = FakeSession(body="created")
    relay = HttpRelay(session=session)

    resp = relay.execute_post({"url": "http://plc.local/cmd", "requestPayload": '{"valve": "open"}'})

    assert resp.status == 200
    method, url, data, headers, _ = session.calls[0]
    assert (method, url, data) == ("POST", "http://plc.local/cmd", b'{"valve": "open"}')
    assert headers["Content-Type"] == "application/json; charset=utf-8"


def test_execute_post_without_payload_raises():
    relay = HttpRelay(session=FakeSession())
    with pytest.raises(ValueError):
        relay.execute_post({"url": "http://plc.local/cmd"})


def test_missing_url_is_a_bad_request():
    session = FakeSession()
    resp = HttpRelay(session=session).execute_get({})

    assert resp.status == 400
    assert set(resp.payload) == {"error"}
    assert session.calls == []


def test_http_error_status_maps_to_500():
    resp = HttpRelay(session=FakeSession(status=503, body="down")).execute_get({"url": "http://plc.local"})

    assert resp.status == 500
    assert resp.payload["clientUrl"] == "http://plc.local"
    assert "503" in resp.payload["error"]
    assert "clientResponse" not in resp.payload


def test_network_error_maps_to_500():
    session = FakeSession(error=requests.ConnectionError("connection refused"))
    resp = HttpRelay(session=session).execute_get({"url": "http://plc.local"})

    assert resp.status == 500
    assert "connection refused" in resp.payload["error"]


def test_run_registers_methods_and_stops(fake_hub, make_settings):
    stop = StopSignal()
    stop.cancel()

    code = run(make_settings(), connection_factory=lambda s, p: fake_hub, install_signals=False, stop=stop)

    assert code == 0
    assert set(fake_hub.method_handlers) == {EXECUTE_GET, EXECUTE_POST}
    assert fake_hub.closed


def test_run_exits_1_when_connection_fails(fake_hub, make_settings):
    fake_hub.open_error = TransportError("refused")
    code = run(make_settings(), connection_factory=lambda s, p: fake_hub, install_signals=False)
    assert code == 1
