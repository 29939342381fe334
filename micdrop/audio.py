"""Audio control adapter: microphone mute and output volume over a pluggable backend."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable

from micdrop.config import MuteMode
from micdrop.errors import AudioError, NoDeviceError

if TYPE_CHECKING:
    from micdrop.config import AudioConfig, ToneConfig

logger = logging.getLogger(__name__)

VOLUME_MIN = 0.0
VOLUME_MAX = 1.0
VOLUME_PRECISION = 4
VOLUME_EPSILON = 1e-4
DEFAULT_UNMUTE_INPUT_VOLUME = 1.0
DEFAULT_UNMUTE_OUTPUT_VOLUME = 0.5


class Scope(str, Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass
class AudioDevice:
    id: int
    name: str
    uid: str
    is_default: bool = False

    def __str__(self) -> str:
        marker = " (DEFAULT)" if self.is_default else ""
        return f"[{self.id}] {self.name}{marker}"


@dataclass(frozen=True)
class AudioState:
    muted: bool
    input_volume: float
    output_volume: float
    output_muted: bool
    input_device: str


AudioListener = Callable[[AudioState], None]


class AudioBackend(ABC):
    """OS primitives. Every method raises AudioError on failure."""

    @abstractmethod
    def default_device(self, scope: Scope) -> int:
        ...

    @abstractmethod
    def set_default_device(self, scope: Scope, device_id: int) -> None:
        ...

    @abstractmethod
    def get_volume(self, device_id: int, scope: Scope) -> float:
        ...

    @abstractmethod
    def set_volume(self, device_id: int, scope: Scope, value: float) -> None:
        ...

    @abstractmethod
    def has_mute(self, device_id: int, scope: Scope) -> bool:
        ...

    @abstractmethod
    def get_mute(self, device_id: int, scope: Scope) -> bool:
        ...

    @abstractmethod
    def set_mute(self, device_id: int, scope: Scope, muted: bool) -> None:
        ...

    @abstractmethod
    def device_name(self, device_id: int) -> str:
        ...

    @abstractmethod
    def device_uid(self, device_id: int) -> str:
        ...

    @abstractmethod
    def list_devices(self, scope: Scope) -> list[AudioDevice]:
        ...


def clamp_volume(value: float) -> float:
    return max(VOLUME_MIN, min(VOLUME_MAX, float(value)))


class AudioController:
    """Mute/volume operations on the default devices.

    All mutations are serialized by one lock. Remembered restore points (the
    volume to come back to, the real microphone's UID) are only updated after
    the backend call succeeded, so a failing call leaves them untouched.
    """

    def __init__(
        self,
        backend: AudioBackend,
        config: "AudioConfig",
        tones: "ToneConfig | None" = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._tones = tones
        self._lock = threading.RLock()
        self._listeners: list[AudioListener] = []
        self._listeners_lock = threading.Lock()
        self._last_state: AudioState | None = None

        self._saved_input_volume: float | None = None
        self._saved_output_volume: float | None = None
        self._real_mic_uid: str | None = None

    # ── Settings ───────────────────────────────────────────────────

    @property
    def mute_mode(self) -> MuteMode:
        return self._config.mute_mode

    @mute_mode.setter
    def mute_mode(self, mode: MuteMode) -> None:
        with self._lock:
            self._config.mute_mode = mode
        logger.info("Mute mode set to %s", mode.value)

    @property
    def volume_step(self) -> float:
        return self._config.volume_step

    # ── Output volume ──────────────────────────────────────────────

    def get_volume(self) -> float:
        with self._lock:
            device = self._backend.default_device(Scope.OUTPUT)
            return round(clamp_volume(self._backend.get_volume(device, Scope.OUTPUT)), VOLUME_PRECISION)

    def set_volume(self, value: float) -> float:
        target = round(clamp_volume(value), VOLUME_PRECISION)
        with self._lock:
            device = self._backend.default_device(Scope.OUTPUT)
            current = self._backend.get_volume(device, Scope.OUTPUT)
            if abs(current - target) < VOLUME_EPSILON:
                return target
            self._backend.set_volume(device, Scope.OUTPUT, target)
        logger.info("Output volume set to %.2f", target)
        self._publish()
        return target

    def increase(self) -> float:
        with self._lock:
            return self.set_volume(self.get_volume() + self._config.volume_step)

    def decrease(self) -> float:
        with self._lock:
            return self.set_volume(self.get_volume() - self._config.volume_step)

    def is_output_muted(self) -> bool:
        with self._lock:
            device = self._backend.default_device(Scope.OUTPUT)
            if self._backend.has_mute(device, Scope.OUTPUT):
                return self._backend.get_mute(device, Scope.OUTPUT)
            return self._backend.get_volume(device, Scope.OUTPUT) < VOLUME_EPSILON

    def toggle_output_mute(self) -> bool:
        with self._lock:
            device = self._backend.default_device(Scope.OUTPUT)
            if self._backend.has_mute(device, Scope.OUTPUT):
                muted = not self._backend.get_mute(device, Scope.OUTPUT)
                self._backend.set_mute(device, Scope.OUTPUT, muted)
            else:
                current = self._backend.get_volume(device, Scope.OUTPUT)
                if current > VOLUME_EPSILON:
                    self._backend.set_volume(device, Scope.OUTPUT, VOLUME_MIN)
                    self._saved_output_volume = current
                    muted = True
                else:
                    restore = self._saved_output_volume or DEFAULT_UNMUTE_OUTPUT_VOLUME
                    self._backend.set_volume(device, Scope.OUTPUT, restore)
                    self._saved_output_volume = None
                    muted = False
        logger.info("Output %s", "muted" if muted else "unmuted")
        self._publish()
        return muted

    # ── Microphone ─────────────────────────────────────────────────

    def get_input_volume(self) -> float:
        with self._lock:
            device = self._backend.default_device(Scope.INPUT)
            return round(clamp_volume(self._backend.get_volume(device, Scope.INPUT)), VOLUME_PRECISION)

    def get_mute_state(self) -> bool:
        with self._lock:
            mode = self._config.mute_mode
            device = self._backend.default_device(Scope.INPUT)
            if mode == MuteMode.DEVICE_SWITCH:
                null_uid = self._config.null_device_uid
                if null_uid and self._backend.device_uid(device) == null_uid:
                    return True
            elif mode == MuteMode.HARDWARE_MUTE and self._backend.has_mute(device, Scope.INPUT):
                return self._backend.get_mute(device, Scope.INPUT)
            return self._backend.get_volume(device, Scope.INPUT) < VOLUME_EPSILON

    def toggle_mute(self) -> bool:
        """Toggle the microphone and return the new muted state."""
        with self._lock:
            mode = self._config.mute_mode
            if mode == MuteMode.DEVICE_SWITCH:
                muted = self._toggle_via_device_switch()
            elif mode == MuteMode.HARDWARE_MUTE:
                muted = self._toggle_via_hardware_mute()
            else:
                muted = self._toggle_via_volume()
        logger.info("Microphone %s (%s)", "muted" if muted else "unmuted", mode.value)
        self._play_feedback(muted)
        self._publish()
        return muted

    def _toggle_via_hardware_mute(self) -> bool:
        device = self._backend.default_device(Scope.INPUT)
        if not self._backend.has_mute(device, Scope.INPUT):
            logger.info("Hardware mute not supported on device %d, falling back to volume mode", device)
            return self._toggle_via_volume()
        muted = not self._backend.get_mute(device, Scope.INPUT)
        self._backend.set_mute(device, Scope.INPUT, muted)
        return muted

    def _toggle_via_volume(self) -> bool:
        device = self._backend.default_device(Scope.INPUT)
        current = self._backend.get_volume(device, Scope.INPUT)
        if current > VOLUME_EPSILON:
            self._backend.set_volume(device, Scope.INPUT, VOLUME_MIN)
            self._saved_input_volume = current
            return True
        restore = self._saved_input_volume or DEFAULT_UNMUTE_INPUT_VOLUME
        self._backend.set_volume(device, Scope.INPUT, restore)
        self._saved_input_volume = None
        return False

    def _toggle_via_device_switch(self) -> bool:
        null_uid = self._config.null_device_uid
        current = self._backend.default_device(Scope.INPUT)
        current_uid = self._backend.device_uid(current)

        if null_uid and current_uid == null_uid:
            real = self._find_restore_device(null_uid)
            self._backend.set_default_device(Scope.INPUT, real.id)
            logger.info("Unmuted: restored input to %s", real.name)
            return False

        null_device = self._find_device(null_uid) if null_uid else None
        if null_device is None:
            logger.warning("Null device not configured or missing, falling back to volume mode")
            return self._toggle_via_volume()
        self._backend.set_default_device(Scope.INPUT, null_device.id)
        self._real_mic_uid = current_uid
        logger.info("Muted: switched input to %s", null_device.name)
        return True

    def _find_device(self, uid: str) -> AudioDevice | None:
        for device in self._backend.list_devices(Scope.INPUT):
            if device.uid == uid:
                return device
        return None

    def _find_restore_device(self, null_uid: str) -> AudioDevice:
        if self._real_mic_uid:
            device = self._find_device(self._real_mic_uid)
            if device is not None:
                return device
            logger.warning("Real microphone %s not found, using first available input", self._real_mic_uid)
        for device in self._backend.list_devices(Scope.INPUT):
            if device.uid != null_uid:
                return device
        raise NoDeviceError("No real microphone to restore")

    def _play_feedback(self, muted: bool) -> None:
        if self._tones is None or not self._tones.enabled:
            return
        try:
            from micdrop.tones import play_tone

            play_tone(self._tones, self._tones.mute_hz if muted else self._tones.unmute_hz)
        except Exception:
            logger.warning("Failed to play feedback tone", exc_info=True)

    # ── Devices ────────────────────────────────────────────────────

    def list_input_devices(self) -> list[AudioDevice]:
        with self._lock:
            return self._backend.list_devices(Scope.INPUT)

    def current_input_device_name(self) -> str:
        try:
            with self._lock:
                return self._backend.device_name(self._backend.default_device(Scope.INPUT))
        except AudioError:
            return "(no input device found)"

    # ── Observers ──────────────────────────────────────────────────

    def state(self) -> AudioState:
        with self._lock:
            return AudioState(
                muted=self.get_mute_state(),
                input_volume=self.get_input_volume(),
                output_volume=self.get_volume(),
                output_muted=self.is_output_muted(),
                input_device=self.current_input_device_name(),
            )

    def subscribe(self, listener: AudioListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes it."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def refresh(self) -> bool:
        """Re-read OS state and notify listeners if something changed externally."""
        return self._publish()

    def _publish(self) -> bool:
        try:
            state = self.state()
        except AudioError:
            logger.debug("Could not read audio state", exc_info=True)
            return False
        if state == self._last_state:
            return False
        self._last_state = state
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Audio state listener failed")
        return True


def create_backend() -> AudioBackend:
    from micdrop.coreaudio import CoreAudioBackend

    return CoreAudioBackend()
