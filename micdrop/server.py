"""Local HTTP control endpoint (iOS Shortcuts, browsers, the Chrome extension)."""

from __future__ import annotations

import errno
import html
import json
import logging
import math
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import parse_qs, urlparse

from micdrop import __version__
from micdrop.bridge import BridgeEvent, BridgeResult, ConfirmResult, Outcome
from micdrop.config import validate_port
from micdrop.errors import AudioError, PortInUseError, ServerError, ValidationError
from micdrop.network import describe_port_owner

if TYPE_CHECKING:
    from micdrop.audio import AudioController
    from micdrop.bridge import BridgeCorrelator
    from micdrop.config import ServerConfig

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 64 * 1024
SHUTDOWN_TIMEOUT_SECONDS = 2.0

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Accept, Authorization, Content-Type, Origin",
}

ToggleCallback = Callable[[bool, str], None]


@dataclass
class Request:
    method: str
    path: str
    query: dict[str, list[str]] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> dict[str, Any]:
        if not self.body.strip():
            return {}
        try:
            data = json.loads(self.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError(f"Malformed JSON body: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError("JSON body must be an object")
        return data

    def query_int(self, name: str) -> int | None:
        values = self.query.get(name)
        if not values:
            return None
        try:
            return int(values[0])
        except ValueError as e:
            raise ValidationError(f"{name} must be an integer") from e


@dataclass
class Response:
    status: int
    payload: dict[str, Any] | None = None
    html_body: str | None = None


def parse_volume(data: dict[str, Any]) -> float:
    value = data.get("volume")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("volume must be a number")
    value = float(value)
    if not math.isfinite(value) or not 0.0 <= value <= 1.0:
        raise ValidationError(f"volume must be between 0.0 and 1.0, got {value}")
    return value


class ControlRequestHandler(BaseHTTPRequestHandler):
    server_version = f"MicDrop/{__version__}"
    server: "_ControlHTTPServer"

    def do_GET(self) -> None:
        self._dispatch("GET")

    def do_POST(self) -> None:
        self._dispatch("POST")

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self._send_cors_headers()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError as e:
            raise ValidationError("Invalid Content-Length") from e
        if length > MAX_BODY_BYTES:
            raise ValidationError("Request body too large")
        return self.rfile.read(length) if length > 0 else b""

    def _dispatch(self, method: str) -> None:
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        try:
            request = Request(method=method, path=path, query=parse_qs(parsed.query), body=self._read_body())
            response = self.server.control.handle(request)
        except ValidationError as e:
            response = Response(400, {"status": "error", "error": str(e)})
        try:
            self._send(response)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Client went away before %s %s completed", method, path)

    def _send(self, response: Response) -> None:
        if response.html_body is not None:
            body = response.html_body.encode("utf-8")
            content_type = "text/html; charset=utf-8"
        else:
            body = json.dumps(response.payload or {}).encode("utf-8")
            content_type = "application/json"
        self.send_response(response.status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(body)

    def _send_cors_headers(self) -> None:
        for name, value in CORS_HEADERS.items():
            self.send_header(name, value)


class _ControlHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], control: "ControlServer") -> None:
        self.control = control
        super().__init__(address, ControlRequestHandler)


class ControlServer:
    """REST routes over the audio controller and the extension bridge.

    Each request runs on its own thread, so a bridge toggle waiting for the
    extension does not hold up other routes.
    """

    def __init__(
        self,
        controller: "AudioController",
        settings: "ServerConfig",
        bridge: "BridgeCorrelator | None" = None,
        bridge_mode: bool = False,
        on_toggle: ToggleCallback | None = None,
    ) -> None:
        self._controller = controller
        self._settings = settings
        self._bridge = bridge
        self.bridge_mode = bridge_mode
        self._on_toggle = on_toggle
        self._httpd: _ControlHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lifecycle_lock = threading.Lock()

        self._routes: dict[tuple[str, str], Callable[[Request], Response]] = {
            ("GET", "/"): self._index,
            ("GET", "/status"): self._status,
            ("POST", "/toggle-mic"): self._toggle_mic,
            ("POST", "/toggle-mic/fast"): self._toggle_mic_fast,
            ("GET", "/volume"): self._volume_status,
            ("POST", "/volume/increase"): self._volume_increase,
            ("POST", "/volume/decrease"): self._volume_decrease,
            ("POST", "/volume/toggle-mute"): self._volume_toggle_mute,
            ("POST", "/volume/set"): self._volume_set,
            ("POST", "/bridge/mic-state"): self._bridge_mic_state,
            ("GET", "/bridge/poll"): self._bridge_poll,
        }

    # ── Lifecycle ──────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._httpd is not None

    @property
    def port(self) -> int:
        httpd = self._httpd
        if httpd is not None:
            return int(httpd.server_address[1])
        return self._settings.port

    @property
    def bridge_active(self) -> bool:
        return self.bridge_mode and self._bridge is not None

    def start(self) -> None:
        """Bind and serve in a background thread. No-op if already running.

        Raises PortInUseError when the port is taken; the server stays stopped.
        """
        with self._lifecycle_lock:
            if self._httpd is not None:
                logger.info("HTTP server already running on port %d", self.port)
                return
            host = self._settings.host
            port = validate_port(self._settings.port)
            try:
                httpd = _ControlHTTPServer((host, port), self)
            except OSError as e:
                if e.errno == errno.EADDRINUSE:
                    owner = describe_port_owner(port)
                    logger.error("Port %d not available (owner: %s)", port, owner or "unknown")
                    raise PortInUseError(port, owner) from e
                raise ServerError(f"Could not start HTTP server on {host}:{port}: {e}") from e
            if self._bridge is not None:
                self._bridge.events.reopen()
            self._httpd = httpd
            self._thread = threading.Thread(target=httpd.serve_forever, name="micdrop-http", daemon=True)
            self._thread.start()
        logger.info("HTTP server started on %s:%d", host, self.port)

    def stop(self) -> None:
        """Stop serving. No-op if not running."""
        with self._lifecycle_lock:
            httpd, thread = self._httpd, self._thread
            if httpd is None:
                return
            self._httpd = None
            self._thread = None
        if self._bridge is not None:
            self._bridge.events.close()  # release long-polling clients
        httpd.shutdown()
        httpd.server_close()
        if thread is not None and thread.is_alive():
            thread.join(timeout=SHUTDOWN_TIMEOUT_SECONDS)
        logger.info("HTTP server stopped")

    # ── Dispatch ───────────────────────────────────────────────────

    def handle(self, request: Request) -> Response:
        route = self._routes.get((request.method, request.path))
        if route is None:
            known_path = any(path == request.path for _, path in self._routes)
            status = 405 if known_path else 404
            return Response(status, {"status": "error", "error": f"No route for {request.method} {request.path}"})
        try:
            return route(request)
        except ValidationError as e:
            logger.info("Rejected %s %s: %s", request.method, request.path, e)
            return Response(400, {"status": "error", "error": str(e)})
        except AudioError as e:
            logger.error("Audio error on %s %s: %s", request.method, request.path, e)
            return Response(500, {"status": "error", "error": str(e)})
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.path)
            return Response(500, {"status": "error", "error": "internal error"})

    def _toggled(self, muted: bool, source: str) -> None:
        if self._on_toggle is None:
            return
        try:
            self._on_toggle(muted, source)
        except Exception:
            logger.exception("Toggle callback failed")

    # ── Routes ─────────────────────────────────────────────────────

    def _index(self, _request: Request) -> Response:
        muted = self._bridge.muted if self.bridge_active else self._controller.get_mute_state()
        label = "Muted" if muted else "Active"
        mode = "Chrome Extension Bridge" if self.bridge_active else self._controller.mute_mode.label
        page = (
            "<!DOCTYPE html><html><head><title>MicDrop</title><meta charset=\"utf-8\"></head>"
            "<body style=\"font-family: system-ui; text-align: center; padding: 50px;\">"
            f"<h1>MicDrop</h1><p>Microphone: <strong>{html.escape(label)}</strong></p>"
            f"<p>Mode: {html.escape(mode)}</p>"
            f"<p style=\"color: #888; font-size: 12px;\">Server running on port {self.port}</p>"
            "</body></html>"
        )
        return Response(200, html_body=page)

    def _status(self, _request: Request) -> Response:
        bridge = self.bridge_active
        muted = self._bridge.muted if bridge else self._controller.get_mute_state()
        return Response(200, {
            "muted": muted,
            "outputVolume": self._controller.get_volume(),
            "outputMuted": self._controller.is_output_muted(),
            "muteMode": "bridge" if bridge else self._controller.mute_mode.value,
            "currentInputDevice": self._controller.current_input_device_name(),
            "bridge": bridge,
        })

    def _toggle_mic(self, _request: Request) -> Response:
        if self.bridge_active:
            result: BridgeResult = self._bridge.request_toggle()
            if result.status == Outcome.OK and result.muted is not None:
                self._toggled(result.muted, "Bridge")
            return Response(200, result.to_dict())
        muted = self._controller.toggle_mute()
        self._toggled(muted, "HTTP")
        return Response(200, {"status": "ok", "muted": muted})

    def _toggle_mic_fast(self, request: Request) -> Response:
        if not self.bridge_active:
            return self._toggle_mic(request)
        muted = self._bridge.fast_toggle()
        self._toggled(muted, "Bridge")
        return Response(200, {"status": "ok", "muted": muted})

    def _volume_payload(self, volume: float) -> Response:
        return Response(200, {"status": "ok", "volume": volume, "muted": self._controller.is_output_muted()})

    def _volume_status(self, _request: Request) -> Response:
        return self._volume_payload(self._controller.get_volume())

    def _forward_to_bridge(self, event: BridgeEvent) -> None:
        if self.bridge_active:
            self._bridge.notify_volume(event)

    def _volume_increase(self, _request: Request) -> Response:
        volume = self._controller.increase()
        self._forward_to_bridge(BridgeEvent.VOLUME_UP)
        return self._volume_payload(volume)

    def _volume_decrease(self, _request: Request) -> Response:
        volume = self._controller.decrease()
        self._forward_to_bridge(BridgeEvent.VOLUME_DOWN)
        return self._volume_payload(volume)

    def _volume_toggle_mute(self, _request: Request) -> Response:
        muted = self._controller.toggle_output_mute()
        self._forward_to_bridge(BridgeEvent.TOGGLE_SPEAKER)
        return Response(200, {"status": "ok", "volume": self._controller.get_volume(), "muted": muted})

    def _volume_set(self, request: Request) -> Response:
        volume = parse_volume(request.json())
        return self._volume_payload(self._controller.set_volume(volume))

    def _bridge_mic_state(self, request: Request) -> Response:
        if self._bridge is None:
            return Response(404, {"status": "error", "error": "bridge not available"})
        data = request.json()
        muted = data.get("muted")
        if not isinstance(muted, bool):
            raise ValidationError("muted must be a boolean")
        correlation_id = data.get("id")
        if correlation_id is not None and not isinstance(correlation_id, str):
            raise ValidationError("id must be a string")
        result = self._bridge.confirm(muted, correlation_id)
        status = "discarded" if result == ConfirmResult.DISCARDED else "updated"
        return Response(200, {"status": status, "muted": muted})

    def _bridge_poll(self, request: Request) -> Response:
        if self._bridge is None:
            return Response(404, {"status": "error", "error": "bridge not available"})
        events = self._bridge.events
        event = events.wait_for_event(since=request.query_int("since"), timeout=self._settings.poll_timeout_s)
        if event is None:
            return Response(200, {"event": BridgeEvent.KEEP_ALIVE.value, "seq": events.last_seq})
        self._bridge.mark_delivered(event)
        return Response(200, event.to_dict())
