"""Menu bar app: wires the audio controller, HTTP endpoint, bridge, and hotkey."""

from __future__ import annotations

import logging
import plistlib
import queue
import sys
import time
from pathlib import Path

import pyperclip
import rumps

from micdrop.audio import AudioController, AudioState, create_backend
from micdrop.bridge import BridgeCorrelator, EventBroadcaster
from micdrop.config import BridgePolicy, MuteMode
from micdrop.errors import AudioError, ServerError
from micdrop.hotkey import HotkeyManager
from micdrop.network import webhook_url
from micdrop.preferences import HOTKEYS, VOLUME_STEPS, Preferences
from micdrop.server import ControlServer

logger = logging.getLogger(__name__)

UI_POLL_INTERVAL_SECONDS = 0.1
DEVICE_POLL_INTERVAL_SECONDS = 2.0
MAX_NOTIFICATION_LENGTH = 120
LAUNCH_AGENT_LABEL = "com.micdrop.app"

TITLE_MUTED = "🔇"
TITLE_ACTIVE = "🎤"


class MicDropMenuBarApp(rumps.App):
    def __init__(self, backend=None) -> None:
        super().__init__("MicDrop", title=TITLE_ACTIVE, quit_button=None)

        self._prefs = Preferences.load()
        self._config = self._prefs.to_config()

        self._ui_queue: queue.Queue[tuple[str, ...]] = queue.Queue()
        self._last_refresh: float = 0.0
        self._server_error: str | None = None

        self._controller = AudioController(
            backend if backend is not None else create_backend(),
            self._config.audio,
            self._config.tones,
        )
        self._controller.subscribe(self._on_audio_state)
        self._bridge = BridgeCorrelator(
            EventBroadcaster(),
            timeout_s=self._config.bridge.timeout_s,
            policy=self._config.bridge.policy,
            on_report=lambda _muted: self._post_ui("refresh"),
        )
        self._server = ControlServer(
            self._controller,
            self._config.server,
            bridge=self._bridge,
            bridge_mode=self._config.bridge.enabled,
            on_toggle=self._on_remote_toggle,
        )
        self._hotkey = HotkeyManager(self._config.hotkey, self._on_hotkey)

        self._status_item = rumps.MenuItem("○ Starting...", callback=lambda _: None)
        self._build_menu()

    # ── UI queue (thread-safe main-thread updates) ─────────────────

    @rumps.timer(UI_POLL_INTERVAL_SECONDS)
    def _poll_ui(self, _timer: rumps.Timer) -> None:
        """Drain the UI queue on the main thread."""
        refresh = False
        while True:
            try:
                msg = self._ui_queue.get_nowait()
            except queue.Empty:
                break
            kind = msg[0]
            if kind == "notify":
                text = str(msg[1])[:MAX_NOTIFICATION_LENGTH]
                rumps.notification("MicDrop", "", text)
            elif kind == "status":
                self._status_item.title = msg[1]
            elif kind == "rebuild_menu":
                self._build_menu()
            elif kind == "refresh":
                refresh = True

        # Pick up changes made outside the app (System Settings, other apps)
        now = time.time()
        if now - self._last_refresh >= DEVICE_POLL_INTERVAL_SECONDS:
            self._last_refresh = now
            self._controller.refresh()
        if refresh:
            self._update_title()

    def _post_ui(self, *msg: str) -> None:
        self._ui_queue.put(msg)

    def _on_audio_state(self, _state: AudioState) -> None:
        self._post_ui("refresh")

    def _current_muted(self) -> bool | None:
        if self._server.bridge_active:
            return self._bridge.muted
        try:
            return self._controller.get_mute_state()
        except AudioError:
            return None

    def _update_title(self) -> None:
        muted = self._current_muted()
        self.title = TITLE_MUTED if muted else TITLE_ACTIVE
        if self._server_error:
            self._status_item.title = f"○ {self._server_error}"
        elif muted is None:
            self._status_item.title = "○ No microphone detected"
        elif self._server.is_running:
            state = "Muted" if muted else "Active"
            self._status_item.title = f"● {state} on port {self._server.port}"
        else:
            self._status_item.title = "○ Server stopped"

    # ── Menu construction ──────────────────────────────────────────

    def _build_menu(self) -> None:
        self.menu.clear()

        server_menu = rumps.MenuItem("Webhook Server")
        server_toggle = rumps.MenuItem("Enabled", callback=self._on_server_toggle)
        server_toggle.state = self._prefs.server_enabled
        server_menu.add(server_toggle)
        remote_toggle = rumps.MenuItem("Allow LAN Access", callback=self._on_remote_access_toggle)
        remote_toggle.state = self._prefs.allow_remote
        server_menu.add(remote_toggle)
        server_menu.add(None)
        server_menu.add(rumps.MenuItem("Copy Webhook URL", callback=self._on_copy_url))
        server_menu.add(rumps.MenuItem(f"Port {self._config.server.port}", callback=lambda _: None))
        server_menu.add(rumps.MenuItem(f"Requests: {self._prefs.request_count}", callback=lambda _: None))

        advanced_menu = rumps.MenuItem("Advanced...")
        advanced_menu.add(self._build_bridge_policy_menu())
        advanced_menu.add(self._build_volume_step_menu())
        advanced_menu.add(self._build_hotkey_menu())
        advanced_menu.add(None)
        advanced_menu.add(self._build_toggle("Notifications", self._prefs.notifications, self._on_notifications_toggle))
        advanced_menu.add(self._build_toggle("Sounds", self._prefs.tones, self._on_tones_toggle))
        advanced_menu.add(self._build_toggle("Launch at Login", self._is_launch_at_login(), self._on_login_toggle))

        self.menu = [
            self._status_item,
            None,
            rumps.MenuItem("Toggle Microphone", callback=self._on_toggle_mic, key="m"),
            self._build_volume_menu(),
            None,
            self._build_mute_mode_menu(),
            self._build_null_device_menu(),
            self._build_toggle("Chrome Extension Bridge", self._config.bridge.enabled, self._on_bridge_toggle),
            None,
            server_menu,
            advanced_menu,
            None,
            rumps.MenuItem("Quit MicDrop", callback=self._on_quit, key="q"),
        ]

    @staticmethod
    def _build_toggle(title: str, state: bool, callback) -> rumps.MenuItem:
        item = rumps.MenuItem(title, callback=callback)
        item.state = state
        return item

    def _build_volume_menu(self) -> rumps.MenuItem:
        volume_menu = rumps.MenuItem("Output Volume")
        volume_menu.add(rumps.MenuItem("Increase", callback=self._on_volume_up))
        volume_menu.add(rumps.MenuItem("Decrease", callback=self._on_volume_down))
        volume_menu.add(rumps.MenuItem("Mute / Unmute", callback=self._on_volume_mute))
        return volume_menu

    def _build_mute_mode_menu(self) -> rumps.MenuItem:
        mode_menu = rumps.MenuItem("Mute Mode")
        for mode in MuteMode:
            item = rumps.MenuItem(mode.label, callback=self._on_mute_mode_select)
            item.state = self._config.audio.mute_mode == mode
            item._mute_mode = mode  # type: ignore[attr-defined]
            mode_menu.add(item)
        return mode_menu

    def _build_null_device_menu(self) -> rumps.MenuItem:
        device_menu = rumps.MenuItem("Null Device")
        try:
            devices = self._controller.list_input_devices()
        except AudioError:
            logger.debug("Device enumeration failed", exc_info=True)
            devices = []
        for dev in devices:
            item = rumps.MenuItem(dev.name, callback=self._on_null_device_select)
            item.state = dev.uid == self._config.audio.null_device_uid
            item._device_uid = dev.uid  # type: ignore[attr-defined]
            device_menu.add(item)
        return device_menu

    def _build_bridge_policy_menu(self) -> rumps.MenuItem:
        policy_menu = rumps.MenuItem("When Bridge Is Busy")
        labels = {
            BridgePolicy.SUPERSEDE: "Replace Pending Toggle",
            BridgePolicy.REJECT: "Reject New Toggle",
        }
        for policy, label in labels.items():
            item = rumps.MenuItem(label, callback=self._on_bridge_policy_select)
            item.state = self._config.bridge.policy == policy
            item._policy = policy  # type: ignore[attr-defined]
            policy_menu.add(item)
        return policy_menu

    def _build_volume_step_menu(self) -> rumps.MenuItem:
        step_menu = rumps.MenuItem("Volume Step")
        for step, label in VOLUME_STEPS:
            item = rumps.MenuItem(label, callback=self._on_volume_step_select)
            item.state = abs(self._config.audio.volume_step - step) < 1e-6
            item._step = step  # type: ignore[attr-defined]
            step_menu.add(item)
        return step_menu

    def _build_hotkey_menu(self) -> rumps.MenuItem:
        hotkey_menu = rumps.MenuItem("Global Hotkey")
        for combo, label in HOTKEYS:
            item = rumps.MenuItem(label, callback=self._on_hotkey_select)
            item.state = self._prefs.hotkey == combo
            item._combo = combo  # type: ignore[attr-defined]
            hotkey_menu.add(item)
        return hotkey_menu

    # ── Toggle paths ───────────────────────────────────────────────

    def _record_toggle(self, muted: bool, source: str) -> None:
        self._prefs.increment_request_count()
        if self._prefs.notifications:
            state = "Muted" if muted else "Unmuted"
            self._post_ui("notify", f"Microphone {state} ({source})")
        self._post_ui("refresh")
        self._post_ui("rebuild_menu")

    def _on_remote_toggle(self, muted: bool, source: str) -> None:
        self._record_toggle(muted, source)

    def _toggle_local(self, source: str) -> None:
        try:
            if self._server.bridge_active:
                muted = self._bridge.fast_toggle()
            else:
                muted = self._controller.toggle_mute()
        except AudioError as e:
            logger.error("Toggle from %s failed: %s", source, e)
            self._post_ui("status", f"○ Mic error: {e}")
            return
        self._record_toggle(muted, source)

    def _on_hotkey(self) -> None:
        self._toggle_local("Global Hotkey")

    def _on_toggle_mic(self, _sender: rumps.MenuItem) -> None:
        self._toggle_local("Menu")

    def _run_volume(self, action) -> None:
        try:
            action()
        except AudioError as e:
            logger.error("Volume change failed: %s", e)
            self._post_ui("status", f"○ Output error: {e}")

    def _on_volume_up(self, _sender: rumps.MenuItem) -> None:
        self._run_volume(self._controller.increase)

    def _on_volume_down(self, _sender: rumps.MenuItem) -> None:
        self._run_volume(self._controller.decrease)

    def _on_volume_mute(self, _sender: rumps.MenuItem) -> None:
        self._run_volume(self._controller.toggle_output_mute)

    # ── Settings callbacks ─────────────────────────────────────────

    def _on_mute_mode_select(self, sender: rumps.MenuItem) -> None:
        mode: MuteMode = sender._mute_mode  # type: ignore[attr-defined]
        self._prefs.mute_mode = mode.value
        self._prefs.save()
        self._controller.mute_mode = mode
        self._build_menu()

    def _on_null_device_select(self, sender: rumps.MenuItem) -> None:
        uid: str = sender._device_uid  # type: ignore[attr-defined]
        self._prefs.null_device_uid = uid
        self._prefs.save()
        self._config.audio.null_device_uid = uid
        self._build_menu()

    def _on_bridge_toggle(self, sender: rumps.MenuItem) -> None:
        self._prefs.bridge_mode = not self._config.bridge.enabled
        sender.state = self._prefs.bridge_mode
        self._prefs.save()
        self._config.bridge.enabled = self._prefs.bridge_mode
        self._server.bridge_mode = self._prefs.bridge_mode
        self._update_title()

    def _on_bridge_policy_select(self, sender: rumps.MenuItem) -> None:
        policy: BridgePolicy = sender._policy  # type: ignore[attr-defined]
        self._prefs.bridge_policy = policy.value
        self._prefs.save()
        self._config.bridge.policy = policy
        self._bridge.policy = policy
        self._build_menu()

    def _on_volume_step_select(self, sender: rumps.MenuItem) -> None:
        self._prefs.volume_step = sender._step  # type: ignore[attr-defined]
        self._prefs.save()
        self._config.audio.volume_step = self._prefs.volume_step
        self._build_menu()

    def _on_hotkey_select(self, sender: rumps.MenuItem) -> None:
        self._prefs.hotkey = sender._combo  # type: ignore[attr-defined]
        self._prefs.save()
        self._hotkey.rebind(self._prefs.hotkey)
        self._build_menu()

    def _on_notifications_toggle(self, sender: rumps.MenuItem) -> None:
        self._prefs.notifications = not self._prefs.notifications
        sender.state = self._prefs.notifications
        self._prefs.save()

    def _on_tones_toggle(self, sender: rumps.MenuItem) -> None:
        self._prefs.tones = not self._prefs.tones
        sender.state = self._prefs.tones
        self._prefs.save()
        self._config.tones.enabled = self._prefs.tones

    def _on_server_toggle(self, sender: rumps.MenuItem) -> None:
        self._prefs.server_enabled = not self._prefs.server_enabled
        sender.state = self._prefs.server_enabled
        self._prefs.save()
        if self._prefs.server_enabled:
            self._start_server()
        else:
            self._server.stop()
            self._server_error = None
        self._update_title()

    def _on_remote_access_toggle(self, sender: rumps.MenuItem) -> None:
        self._prefs.allow_remote = not self._prefs.allow_remote
        sender.state = self._prefs.allow_remote
        self._prefs.save()
        self._config.server.allow_remote = self._prefs.allow_remote
        # Bind address only changes on restart
        if self._server.is_running:
            self._server.stop()
            self._start_server()
        self._update_title()

    def _on_copy_url(self, _sender: rumps.MenuItem) -> None:
        host = None if self._prefs.allow_remote else "127.0.0.1"
        url = webhook_url(self._server.port, host=host)
        try:
            pyperclip.copy(url)
        except pyperclip.PyperclipException as e:
            logger.error("Clipboard not available: %s", e)
            return
        self._post_ui("notify", f"Copied {url}")

    # ── Launch at login ────────────────────────────────────────────

    def _on_login_toggle(self, sender: rumps.MenuItem) -> None:
        enabled = not self._is_launch_at_login()
        self._set_launch_at_login(enabled)
        self._prefs.auto_start = enabled
        self._prefs.save()
        sender.state = enabled

    @staticmethod
    def _launch_agent_path() -> Path:
        return Path.home() / "Library" / "LaunchAgents" / f"{LAUNCH_AGENT_LABEL}.plist"

    def _is_launch_at_login(self) -> bool:
        return self._launch_agent_path().exists()

    def _set_launch_at_login(self, enabled: bool) -> None:
        plist_path = self._launch_agent_path()
        if enabled:
            plist_data = {
                "Label": LAUNCH_AGENT_LABEL,
                "ProgramArguments": [sys.executable, "-m", "micdrop", "--foreground"],
                "RunAtLoad": True,
            }
            plist_path.parent.mkdir(parents=True, exist_ok=True)
            with open(plist_path, "wb") as f:
                plistlib.dump(plist_data, f)
            logger.info("Launch at Login enabled: %s", plist_path)
        elif plist_path.exists():
            plist_path.unlink()
            logger.info("Launch at Login disabled")

    # ── Lifecycle ──────────────────────────────────────────────────

    def _start_server(self) -> bool:
        try:
            self._server.start()
        except ServerError as e:
            logger.error("Webhook server not started: %s", e)
            self._server_error = str(e)
            self._post_ui("notify", str(e))
            self._post_ui("refresh")
            return False
        self._server_error = None
        self._post_ui("refresh")
        return True

    def start_app(self) -> None:
        if self._config.server.enabled:
            self._start_server()
        self._hotkey.start()
        self._update_title()
        self.run()

    def shutdown(self) -> None:
        logger.info("Shutting down...")
        self._hotkey.stop()
        self._server.stop()

    def _on_quit(self, _sender: rumps.MenuItem) -> None:
        self.shutdown()
        rumps.quit_application()
