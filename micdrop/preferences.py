"""Menu presets and preferences persistence for the menu bar app."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from micdrop.config import (
    DEFAULT_HOTKEY,
    DEFAULT_PORT,
    DEFAULT_VOLUME_STEP,
    BridgePolicy,
    Config,
    MuteMode,
    validate_port,
)
from micdrop.errors import ValidationError

logger = logging.getLogger(__name__)

PREFS_DIR = Path.home() / "Library" / "Application Support" / "MicDrop"
PREFS_FILE = PREFS_DIR / "preferences.json"
# Settings file of the earlier mic-toggle-server, imported once on first load
LEGACY_SETTINGS_FILE = Path.home() / ".config" / "mic-toggle-server" / "settings.json"
PREFS_VERSION = 2

HOTKEYS: list[tuple[str, str]] = [
    ("<alt>+m", "Option+M"),
    ("<cmd>+<shift>+m", "Command+Shift+M"),
    ("<ctrl>+<alt>+m", "Control+Option+M"),
    ("none", "Disabled"),
]

VOLUME_STEPS: list[tuple[float, str]] = [
    (0.05, "5%"),
    (0.1, "10%"),
    (0.2, "20%"),
]


@dataclass
class Preferences:
    server_enabled: bool = True
    port: int = DEFAULT_PORT
    allow_remote: bool = True
    bridge_mode: bool = False
    bridge_policy: str = BridgePolicy.SUPERSEDE.value
    mute_mode: str = MuteMode.HARDWARE_MUTE.value
    null_device_uid: str | None = None
    volume_step: float = DEFAULT_VOLUME_STEP
    notifications: bool = True
    tones: bool = True
    hotkey: str = DEFAULT_HOTKEY
    auto_start: bool = False
    request_count: int = 0
    migrated_legacy: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}

    def save(self) -> None:
        with self._lock:
            self._write()

    def _write(self) -> None:
        # Caller holds _lock. The file is replaced by rename, never written in place.
        PREFS_DIR.mkdir(parents=True, exist_ok=True)
        os.chmod(PREFS_DIR, 0o700)
        data = self.to_dict()
        data["_prefs_version"] = PREFS_VERSION
        tmp = PREFS_FILE.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2))
            os.chmod(tmp, 0o600)
            os.replace(tmp, PREFS_FILE)
        except OSError:
            logger.exception("Failed to save preferences")

    @classmethod
    def load(cls) -> Preferences:
        if not PREFS_FILE.exists():
            prefs = cls()
            prefs.migrate_legacy()
            prefs.save()
            return prefs
        try:
            data = json.loads(PREFS_FILE.read_text())
            if not isinstance(data, dict):
                raise ValueError("preferences must be a JSON object")
        except (json.JSONDecodeError, OSError, ValueError):
            logger.exception("Failed to load preferences, using defaults")
            return cls()
        defaults = cls()
        known = {name: value for name, value in data.items() if name in defaults.to_dict()}
        prefs = cls(**known)
        prefs._sanitize()
        if not prefs.migrated_legacy:
            prefs.migrate_legacy()
        return prefs

    def _sanitize(self) -> None:
        """Reset values that no longer parse to their defaults."""
        defaults = type(self)()
        try:
            validate_port(self.port)
        except ValidationError:
            logger.warning("Invalid saved port %r, using %d", self.port, defaults.port)
            self.port = defaults.port
        if self.mute_mode not in {m.value for m in MuteMode}:
            logger.warning("Unknown saved mute mode %r", self.mute_mode)
            self.mute_mode = defaults.mute_mode
        if self.bridge_policy not in {p.value for p in BridgePolicy}:
            self.bridge_policy = defaults.bridge_policy
        if not isinstance(self.volume_step, (int, float)) or not 0.0 < self.volume_step <= 1.0:
            self.volume_step = defaults.volume_step
        if not isinstance(self.request_count, int) or self.request_count < 0:
            self.request_count = 0

    def migrate_legacy(self) -> bool:
        """Import settings from the legacy mic-toggle-server once."""
        if self.migrated_legacy or not LEGACY_SETTINGS_FILE.exists():
            return False
        try:
            data = json.loads(LEGACY_SETTINGS_FILE.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to read legacy settings at %s", LEGACY_SETTINGS_FILE)
            return False
        if not isinstance(data, dict):
            return False
        if isinstance(data.get("auto_start"), bool):
            self.auto_start = data["auto_start"]
        if isinstance(data.get("notifications"), bool):
            self.notifications = data["notifications"]
        if isinstance(data.get("remote_access"), bool):
            self.allow_remote = data["remote_access"]
        if isinstance(data.get("request_count"), int):
            self.request_count = data["request_count"]
        self.migrated_legacy = True
        logger.info(
            "Migrated legacy settings: auto_start=%s notifications=%s remote=%s requests=%d",
            self.auto_start, self.notifications, self.allow_remote, self.request_count,
        )
        self.save()
        return True

    def increment_request_count(self) -> int:
        with self._lock:
            self.request_count += 1
            self._write()
            return self.request_count

    def to_config(self) -> Config:
        """Build the runtime config: defaults, then saved preferences, then MICDROP_* env overrides."""
        config = Config()
        self.apply_to(config)
        config.apply_env()
        return config

    def apply_to(self, config: Config) -> None:
        config.server.enabled = self.server_enabled
        config.server.port = self.port
        config.server.allow_remote = self.allow_remote
        config.bridge.enabled = self.bridge_mode
        config.bridge.policy = BridgePolicy(self.bridge_policy)
        config.audio.mute_mode = MuteMode(self.mute_mode)
        config.audio.null_device_uid = self.null_device_uid
        config.audio.volume_step = float(self.volume_step)
        config.tones.enabled = self.tones
        config.notifications = self.notifications
        config.hotkey = self.hotkey

    @property
    def hotkey_label(self) -> str:
        for combo, label in HOTKEYS:
            if combo == self.hotkey:
                return label
        return self.hotkey
