"""Configuration for the MicDrop application."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from micdrop.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8765
DEFAULT_VOLUME_STEP = 0.1
DEFAULT_BRIDGE_TIMEOUT_S = 5.0
DEFAULT_HOTKEY = "<alt>+m"
MAX_PORT = 65535


class MuteMode(str, Enum):
    HARDWARE_MUTE = "hardware-mute"
    VOLUME_ZERO = "volume-zero"
    DEVICE_SWITCH = "device-switch"

    @property
    def label(self) -> str:
        labels = {
            MuteMode.HARDWARE_MUTE: "Hardware Mute",
            MuteMode.VOLUME_ZERO: "Volume Zero",
            MuteMode.DEVICE_SWITCH: "Switch to Null Device",
        }
        return labels[self]


class BridgePolicy(str, Enum):
    """What a bridge toggle does when another one is still awaiting confirmation."""

    SUPERSEDE = "supersede"
    REJECT = "reject"


def _parse_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


def validate_port(port: int) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValidationError(f"port must be an integer, got {port!r}")
    if not 0 <= port <= MAX_PORT:
        raise ValidationError(f"port must be between 0 and {MAX_PORT}, got {port}")
    return port


@dataclass
class ServerConfig:
    enabled: bool = True
    port: int = DEFAULT_PORT
    allow_remote: bool = True  # bind 0.0.0.0 so iOS Shortcuts on the LAN can reach us
    poll_timeout_s: float = 25.0

    @property
    def host(self) -> str:
        return "0.0.0.0" if self.allow_remote else "127.0.0.1"


@dataclass
class BridgeConfig:
    enabled: bool = False
    timeout_s: float = DEFAULT_BRIDGE_TIMEOUT_S
    policy: BridgePolicy = BridgePolicy.SUPERSEDE


@dataclass
class AudioConfig:
    mute_mode: MuteMode = MuteMode.HARDWARE_MUTE
    volume_step: float = DEFAULT_VOLUME_STEP
    null_device_uid: str | None = None

    def __post_init__(self) -> None:
        if not 0.0 < self.volume_step <= 1.0:
            raise ValidationError(f"volume_step must be in (0, 1], got {self.volume_step}")


@dataclass
class ToneConfig:
    enabled: bool = True
    mute_hz: int = 440
    unmute_hz: int = 880
    volume: float = 0.15


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    tones: ToneConfig = field(default_factory=ToneConfig)
    hotkey: str = DEFAULT_HOTKEY
    notifications: bool = True
    verbose: bool = False

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Override fields from MICDROP_* environment variables."""
        if port := os.environ.get("MICDROP_PORT"):
            try:
                self.server.port = validate_port(int(port))
            except (ValueError, ValidationError):
                logger.warning("Invalid MICDROP_PORT=%r, using %d", port, self.server.port)

        if enabled := os.environ.get("MICDROP_SERVER_ENABLED"):
            self.server.enabled = _parse_bool(enabled)

        if remote := os.environ.get("MICDROP_ALLOW_REMOTE"):
            self.server.allow_remote = _parse_bool(remote)

        if mode := os.environ.get("MICDROP_MUTE_MODE"):
            try:
                self.audio.mute_mode = MuteMode(mode.lower())
            except ValueError:
                logger.warning("Invalid MICDROP_MUTE_MODE=%r, using %r", mode, self.audio.mute_mode)

        if step := os.environ.get("MICDROP_VOLUME_STEP"):
            try:
                value = float(step)
                if not 0.0 < value <= 1.0:
                    raise ValueError(step)
                self.audio.volume_step = value
            except ValueError:
                logger.warning("Invalid MICDROP_VOLUME_STEP=%r, using %r", step, self.audio.volume_step)

        if uid := os.environ.get("MICDROP_NULL_DEVICE_UID"):
            self.audio.null_device_uid = uid

        # Chrome extension bridge
        if bridge := os.environ.get("MICDROP_BRIDGE"):
            self.bridge.enabled = _parse_bool(bridge)

        if timeout := os.environ.get("MICDROP_BRIDGE_TIMEOUT"):
            try:
                value = float(timeout)
                if value <= 0:
                    raise ValueError(timeout)
                self.bridge.timeout_s = value
            except ValueError:
                logger.warning("Invalid MICDROP_BRIDGE_TIMEOUT=%r, using %r", timeout, self.bridge.timeout_s)

        if policy := os.environ.get("MICDROP_BRIDGE_POLICY"):
            try:
                self.bridge.policy = BridgePolicy(policy.lower())
            except ValueError:
                logger.warning("Invalid MICDROP_BRIDGE_POLICY=%r, using %r", policy, self.bridge.policy)

        if verbose := os.environ.get("MICDROP_VERBOSE"):
            self.verbose = _parse_bool(verbose)
