"""Tests for micdrop.server: real HTTP round-trips against a local ControlServer."""

import json
import socket
import threading
import time
import urllib.error
import urllib.request
from unittest import mock

import pytest

from conftest import SPEAKERS
from micdrop.audio import Scope
from micdrop.config import ServerConfig
from micdrop.errors import PortInUseError, ValidationError
from micdrop.server import ControlServer, Request, parse_volume


def _call(server, method, path, body=None, raw=None, headers=None):
    data = raw if raw is not None else (json.dumps(body).encode() if body is not None else None)
    req = urllib.request.Request(
        f"http://127.0.0.1:{server.port}{path}", data=data, method=method, headers=headers or {},
    )
    if data is not None:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, resp.headers, resp.read()
    except urllib.error.HTTPError as e:
        return e.code, e.headers, e.read()


def _json(server, method, path, body=None, raw=None):
    status, _, payload = _call(server, method, path, body=body, raw=raw)
    return status, json.loads(payload)


class TestStatus:
    """GET /status and the HTML page."""

    def test_status_fields(self, server):
        status, data = _json(server, "GET", "/status")
        assert status == 200
        assert data == {
            "muted": False,
            "outputVolume": 0.5,
            "outputMuted": False,
            "muteMode": "hardware-mute",
            "currentInputDevice": "MacBook Pro Microphone",
            "bridge": False,
        }

    def test_status_reports_bridge_mode(self, server):
        server.bridge_mode = True
        _, data = _json(server, "GET", "/status")
        assert data["muteMode"] == "bridge"
        assert data["bridge"] is True

    def test_index_page(self, server):
        status, headers, body = _call(server, "GET", "/")
        assert status == 200
        assert headers["Content-Type"].startswith("text/html")
        assert b"Active" in body

    def test_trailing_slash_is_accepted(self, server):
        status, _ = _json(server, "GET", "/status/")
        assert status == 200


class TestToggleMic:
    """POST /toggle-mic in direct mode."""

    def test_toggle_twice_returns_opposite_states(self, server):
        _, first = _json(server, "POST", "/toggle-mic")
        _, second = _json(server, "POST", "/toggle-mic")
        assert first == {"status": "ok", "muted": True}
        assert second == {"status": "ok", "muted": False}

    def test_status_reflects_toggle(self, server):
        _json(server, "POST", "/toggle-mic")
        _, data = _json(server, "GET", "/status")
        assert data["muted"] is True

    def test_fast_route_without_bridge_toggles_directly(self, server):
        _, data = _json(server, "POST", "/toggle-mic/fast")
        assert data == {"status": "ok", "muted": True}

    def test_audio_failure_returns_500(self, server, backend):
        backend.failing.add("set_mute")
        status, data = _json(server, "POST", "/toggle-mic")
        assert status == 500
        assert data["status"] == "error"
        assert "set_mute failed" in data["error"]

    def test_toggle_callback(self, controller, backend):
        on_toggle = mock.Mock()
        srv = ControlServer(controller, ServerConfig(port=0, allow_remote=False), on_toggle=on_toggle)
        srv.start()
        try:
            _json(srv, "POST", "/toggle-mic")
        finally:
            srv.stop()
        on_toggle.assert_called_once_with(True, "HTTP")


class TestVolume:
    """Output volume routes."""

    @pytest.mark.parametrize("volume", [0, 0.05, 0.1, 0.3, 0.33, 0.5, 0.999, 1.0])
    def test_set_then_get(self, server, volume):
        status, data = _json(server, "POST", "/volume/set", body={"volume": volume})
        assert status == 200
        assert data == {"status": "ok", "volume": volume, "muted": False}
        _, data = _json(server, "GET", "/volume")
        assert data["volume"] == volume

    def test_out_of_range_rejected(self, server, backend):
        status, data = _json(server, "POST", "/volume/set", body={"volume": 1.5})
        assert status == 400
        assert data["status"] == "error"
        assert backend.volumes[(SPEAKERS, Scope.OUTPUT)] == 0.5

    def test_missing_volume_rejected(self, server):
        status, _ = _json(server, "POST", "/volume/set", body={})
        assert status == 400

    def test_malformed_json_rejected(self, server):
        status, data = _json(server, "POST", "/volume/set", raw=b"{not json")
        assert status == 400
        assert "Malformed JSON" in data["error"]

    def test_increase_and_decrease(self, server):
        _, data = _json(server, "POST", "/volume/increase")
        assert data["volume"] == pytest.approx(0.6)
        _, data = _json(server, "POST", "/volume/decrease")
        assert data["volume"] == pytest.approx(0.5)

    def test_toggle_mute(self, server):
        _, data = _json(server, "POST", "/volume/toggle-mute")
        assert data["muted"] is True
        _, data = _json(server, "POST", "/volume/toggle-mute")
        assert data["muted"] is False

    def test_volume_routes_forward_to_bridge(self, server, bridge, backend):
        server.bridge_mode = True
        _json(server, "POST", "/volume/increase")
        _json(server, "POST", "/volume/decrease")
        _json(server, "POST", "/volume/toggle-mute")
        seen = []
        for since in range(3):
            _, event = _json(server, "GET", f"/bridge/poll?since={since}")
            seen.append(event["event"])
        assert seen == ["volume-up", "volume-down", "toggle-speaker"]
        assert backend.volumes[(SPEAKERS, Scope.OUTPUT)] == pytest.approx(0.5)

    def test_volume_routes_silent_without_bridge_mode(self, server, bridge):
        _json(server, "POST", "/volume/increase")
        _json(server, "POST", "/volume/toggle-mute")
        assert bridge.events.last_seq == 0


class TestRouting:
    """Unknown routes, wrong methods and CORS."""

    def test_unknown_path_404(self, server):
        status, _ = _json(server, "GET", "/nope")
        assert status == 404

    def test_wrong_method_405(self, server):
        status, _ = _json(server, "GET", "/toggle-mic")
        assert status == 405

    def test_cors_on_responses(self, server):
        _, headers, _ = _call(server, "GET", "/status")
        assert headers["Access-Control-Allow-Origin"] == "*"

    def test_options_preflight(self, server):
        status, headers, body = _call(server, "OPTIONS", "/volume/set")
        assert status == 204
        assert "POST" in headers["Access-Control-Allow-Methods"]
        assert body == b""


class TestBridgeRoutes:
    """Bridge-routed toggles, state reports and polling."""

    def test_toggle_times_out_without_extension(self, server):
        server.bridge_mode = True
        start = time.monotonic()
        status, data = _json(server, "POST", "/toggle-mic")
        assert status == 200
        assert data["status"] == "timeout"
        assert "muted" not in data
        assert time.monotonic() - start < 3.0

    def test_confirmation_resolves_toggle(self, server, bridge):
        server.bridge_mode = True
        bridge.timeout_s = 3.0
        results = []
        thread = threading.Thread(target=lambda: results.append(_json(server, "POST", "/toggle-mic")))
        thread.start()
        _, event = _json(server, "GET", "/bridge/poll?since=0")
        assert event["event"] == "mute-mic"
        _, report = _json(server, "POST", "/bridge/mic-state", body={"muted": True, "id": event["id"]})
        assert report == {"status": "updated", "muted": True}
        thread.join(timeout=5)
        status, data = results[0]
        assert status == 200
        assert data["status"] == "ok"
        assert data["muted"] is True
        assert data["id"] == event["id"]

    def test_report_without_id_waits_for_delivery(self, server, bridge):
        server.bridge_mode = True
        bridge.timeout_s = 3.0
        results = []
        thread = threading.Thread(target=lambda: results.append(_json(server, "POST", "/toggle-mic")))
        thread.start()
        deadline = time.monotonic() + 2.0
        while bridge.pending is None and time.monotonic() < deadline:
            time.sleep(0.005)
        pending = bridge.pending
        # Not yet polled: a report without an id cannot belong to this toggle
        _, report = _json(server, "POST", "/bridge/mic-state", body={"muted": False})
        assert report == {"status": "updated", "muted": False}
        assert bridge.pending is pending
        _, event = _json(server, "GET", "/bridge/poll?since=0")
        assert event["id"] == pending.id
        _json(server, "POST", "/bridge/mic-state", body={"muted": True})
        thread.join(timeout=5)
        status, data = results[0]
        assert status == 200
        assert data == {"status": "ok", "muted": True, "id": pending.id}

    def test_stale_report_discarded(self, server):
        status, data = _json(server, "POST", "/bridge/mic-state", body={"muted": True, "id": "stale"})
        assert status == 200
        assert data["status"] == "discarded"

    def test_report_requires_boolean(self, server):
        status, _ = _json(server, "POST", "/bridge/mic-state", body={"muted": "yes"})
        assert status == 400

    def test_poll_keep_alive(self, server):
        status, data = _json(server, "GET", "/bridge/poll")
        assert status == 200
        assert data == {"event": "keep-alive", "seq": 0}

    def test_poll_bad_since(self, server):
        status, _ = _json(server, "GET", "/bridge/poll?since=abc")
        assert status == 400

    def test_fast_toggle_in_bridge_mode(self, server, bridge):
        server.bridge_mode = True
        _, data = _json(server, "POST", "/toggle-mic/fast")
        assert data == {"status": "ok", "muted": True}
        assert bridge.events.last_seq == 2
        _, first = _json(server, "GET", "/bridge/poll?since=0")
        _, second = _json(server, "GET", "/bridge/poll?since=1")
        assert (first["event"], second["event"]) == ("mute-mic", "toggle-mic")
        assert first["id"] is None


class TestLifecycle:
    """start/stop idempotence and port conflicts."""

    def test_start_is_idempotent(self, server):
        port = server.port
        server.start()
        assert server.is_running
        assert server.port == port

    def test_stop_when_stopped_is_noop(self, controller):
        srv = ControlServer(controller, ServerConfig(port=0, allow_remote=False))
        srv.stop()
        assert not srv.is_running

    def test_restart(self, controller):
        srv = ControlServer(controller, ServerConfig(port=0, allow_remote=False))
        srv.start()
        srv.stop()
        srv.start()
        try:
            status, _ = _json(srv, "GET", "/status")
            assert status == 200
        finally:
            srv.stop()

    def test_port_in_use(self, controller):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        srv = ControlServer(controller, ServerConfig(port=port, allow_remote=False))
        try:
            with mock.patch("micdrop.server.describe_port_owner", return_value="'python' (PID 42)"):
                with pytest.raises(PortInUseError) as exc_info:
                    srv.start()
        finally:
            blocker.close()
        assert exc_info.value.port == port
        assert "PID 42" in str(exc_info.value)
        assert not srv.is_running


class TestParsing:
    """Request helpers outside the HTTP loop."""

    @pytest.mark.parametrize("value", [True, "0.5", None, float("nan"), -0.1, 1.01])
    def test_parse_volume_rejects(self, value):
        with pytest.raises(ValidationError):
            parse_volume({"volume": value})

    @pytest.mark.parametrize("value", [0, 1, 0.25])
    def test_parse_volume_accepts(self, value):
        assert parse_volume({"volume": value}) == float(value)

    def test_json_must_be_object(self):
        with pytest.raises(ValidationError):
            Request("POST", "/volume/set", body=b"[1, 2]").json()

    def test_empty_body_is_empty_object(self):
        assert Request("POST", "/toggle-mic").json() == {}
