"""Shared fixtures: an in-memory audio backend and a running control server."""

from __future__ import annotations

import pytest

from micdrop.audio import AudioBackend, AudioController, AudioDevice, Scope
from micdrop.bridge import BridgeCorrelator, EventBroadcaster
from micdrop.config import AudioConfig, ServerConfig
from micdrop.errors import AudioError, NoDeviceError
from micdrop.server import ControlServer

BUILTIN_MIC = 1
NULL_MIC = 2
SPEAKERS = 3
NULL_UID = "BlackHole2ch_UID"


class FakeAudioBackend(AudioBackend):
    """In-memory devices. Add method names to ``failing`` to make them raise AudioError."""

    def __init__(self, input_has_mute: bool = True, output_has_mute: bool = True) -> None:
        self.devices = {
            BUILTIN_MIC: ("MacBook Pro Microphone", "BuiltInMicrophoneDevice", Scope.INPUT),
            NULL_MIC: ("BlackHole 2ch", NULL_UID, Scope.INPUT),
            SPEAKERS: ("MacBook Pro Speakers", "BuiltInSpeakerDevice", Scope.OUTPUT),
        }
        self.defaults = {Scope.INPUT: BUILTIN_MIC, Scope.OUTPUT: SPEAKERS}
        self.volumes: dict[tuple[int, Scope], float] = {
            (BUILTIN_MIC, Scope.INPUT): 0.8,
            (NULL_MIC, Scope.INPUT): 1.0,
            (SPEAKERS, Scope.OUTPUT): 0.5,
        }
        self.mutes: dict[tuple[int, Scope], bool] = {}
        self.has_mute_for = {Scope.INPUT: input_has_mute, Scope.OUTPUT: output_has_mute}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failing:
            raise AudioError(f"{name} failed (OSStatus -50)")

    def default_device(self, scope: Scope) -> int:
        self._check("default_device")
        device = self.defaults.get(scope, 0)
        if not device:
            raise NoDeviceError(f"No default {scope.value} device")
        return device

    def set_default_device(self, scope: Scope, device_id: int) -> None:
        self._check("set_default_device")
        self.defaults[scope] = device_id

    def get_volume(self, device_id: int, scope: Scope) -> float:
        self._check("get_volume")
        return self.volumes.get((device_id, scope), 1.0)

    def set_volume(self, device_id: int, scope: Scope, value: float) -> None:
        self._check("set_volume")
        self.volumes[(device_id, scope)] = value

    def has_mute(self, device_id: int, scope: Scope) -> bool:
        return self.has_mute_for[scope]

    def get_mute(self, device_id: int, scope: Scope) -> bool:
        self._check("get_mute")
        return self.mutes.get((device_id, scope), False)

    def set_mute(self, device_id: int, scope: Scope, muted: bool) -> None:
        self._check("set_mute")
        self.mutes[(device_id, scope)] = muted

    def device_name(self, device_id: int) -> str:
        self._check("device_name")
        return self.devices[device_id][0]

    def device_uid(self, device_id: int) -> str:
        return self.devices[device_id][1]

    def list_devices(self, scope: Scope) -> list[AudioDevice]:
        self._check("list_devices")
        return [
            AudioDevice(id=dev_id, name=name, uid=uid, is_default=self.defaults.get(scope) == dev_id)
            for dev_id, (name, uid, dev_scope) in self.devices.items()
            if dev_scope == scope
        ]


@pytest.fixture
def backend() -> FakeAudioBackend:
    return FakeAudioBackend()


@pytest.fixture
def audio_config() -> AudioConfig:
    return AudioConfig()


@pytest.fixture
def controller(backend: FakeAudioBackend, audio_config: AudioConfig) -> AudioController:
    return AudioController(backend, audio_config)


@pytest.fixture
def bridge() -> BridgeCorrelator:
    return BridgeCorrelator(EventBroadcaster(), timeout_s=0.3)


@pytest.fixture
def server(controller: AudioController, bridge: BridgeCorrelator):
    srv = ControlServer(
        controller,
        ServerConfig(port=0, allow_remote=False, poll_timeout_s=0.3),
        bridge=bridge,
    )
    srv.start()
    yield srv
    srv.stop()
