"""
Core Audio bindings using ctypes.

Only the handful of AudioObject property calls MicDrop needs: default devices,
volume scalar, mute, device enumeration, names and UIDs.

Based on Core Audio headers:
- AudioHardware.h
- AudioHardwareBase.h
"""

from __future__ import annotations

import ctypes
import ctypes.util
import logging
import struct

from micdrop.audio import AudioBackend, AudioDevice, Scope
from micdrop.errors import CoreAudioError, NoDeviceError

logger = logging.getLogger(__name__)

_core_audio = None
_core_foundation = None


def _load_frameworks():
    """Load Core Audio and Core Foundation frameworks."""
    global _core_audio, _core_foundation

    if _core_audio is None:
        framework_path = ctypes.util.find_library("CoreAudio")
        if not framework_path:
            raise CoreAudioError("CoreAudio framework not found")
        _core_audio = ctypes.CDLL(framework_path)
        _declare_core_audio(_core_audio)
        logger.debug("Loaded CoreAudio framework: %s", framework_path)

    if _core_foundation is None:
        cf_path = ctypes.util.find_library("CoreFoundation")
        if not cf_path:
            raise CoreAudioError("CoreFoundation framework not found")
        _core_foundation = ctypes.CDLL(cf_path)
        _declare_core_foundation(_core_foundation)
        logger.debug("Loaded CoreFoundation framework: %s", cf_path)

    return _core_audio, _core_foundation


def _fourcc(code: str) -> int:
    return struct.unpack(">I", code.encode("ascii"))[0]


# Core Audio types
AudioObjectID = ctypes.c_uint32
OSStatus = ctypes.c_int32
Boolean = ctypes.c_ubyte
CFStringRef = ctypes.c_void_p


class AudioObjectPropertyAddress(ctypes.Structure):
    _fields_ = [
        ("mSelector", ctypes.c_uint32),
        ("mScope", ctypes.c_uint32),
        ("mElement", ctypes.c_uint32),
    ]


kAudioObjectSystemObject = 1
kAudioObjectUnknown = 0
kAudioObjectPropertyElementMain = 0
kAudioObjectPropertyScopeGlobal = _fourcc("glob")
kAudioObjectPropertyScopeInput = _fourcc("inpt")
kAudioObjectPropertyScopeOutput = _fourcc("outp")
kAudioObjectPropertyName = _fourcc("lnam")

kAudioHardwarePropertyDevices = _fourcc("dev#")
kAudioHardwarePropertyDefaultInputDevice = _fourcc("dIn ")
kAudioHardwarePropertyDefaultOutputDevice = _fourcc("dOut")

kAudioDevicePropertyVolumeScalar = _fourcc("volm")
kAudioDevicePropertyMute = _fourcc("mute")
kAudioDevicePropertyDeviceUID = _fourcc("uid ")
kAudioDevicePropertyStreams = _fourcc("stm#")

kCFStringEncodingUTF8 = 0x08000100

# Devices without a main-element volume expose per-channel controls instead
STEREO_CHANNELS = (1, 2)

_SCOPES = {
    Scope.INPUT: kAudioObjectPropertyScopeInput,
    Scope.OUTPUT: kAudioObjectPropertyScopeOutput,
}
_DEFAULT_DEVICE_SELECTORS = {
    Scope.INPUT: kAudioHardwarePropertyDefaultInputDevice,
    Scope.OUTPUT: kAudioHardwarePropertyDefaultOutputDevice,
}


def _declare_core_audio(lib) -> None:
    addr_p = ctypes.POINTER(AudioObjectPropertyAddress)

    lib.AudioObjectHasProperty.argtypes = [AudioObjectID, addr_p]
    lib.AudioObjectHasProperty.restype = Boolean

    lib.AudioObjectIsPropertySettable.argtypes = [AudioObjectID, addr_p, ctypes.POINTER(Boolean)]
    lib.AudioObjectIsPropertySettable.restype = OSStatus

    lib.AudioObjectGetPropertyDataSize.argtypes = [
        AudioObjectID, addr_p, ctypes.c_uint32, ctypes.c_void_p, ctypes.POINTER(ctypes.c_uint32),
    ]
    lib.AudioObjectGetPropertyDataSize.restype = OSStatus

    lib.AudioObjectGetPropertyData.argtypes = [
        AudioObjectID, addr_p, ctypes.c_uint32, ctypes.c_void_p,
        ctypes.POINTER(ctypes.c_uint32), ctypes.c_void_p,
    ]
    lib.AudioObjectGetPropertyData.restype = OSStatus

    lib.AudioObjectSetPropertyData.argtypes = [
        AudioObjectID, addr_p, ctypes.c_uint32, ctypes.c_void_p, ctypes.c_uint32, ctypes.c_void_p,
    ]
    lib.AudioObjectSetPropertyData.restype = OSStatus


def _declare_core_foundation(lib) -> None:
    lib.CFStringGetLength.argtypes = [CFStringRef]
    lib.CFStringGetLength.restype = ctypes.c_long
    lib.CFStringGetMaximumSizeForEncoding.argtypes = [ctypes.c_long, ctypes.c_uint32]
    lib.CFStringGetMaximumSizeForEncoding.restype = ctypes.c_long
    lib.CFStringGetCString.argtypes = [CFStringRef, ctypes.c_char_p, ctypes.c_long, ctypes.c_uint32]
    lib.CFStringGetCString.restype = Boolean
    lib.CFRelease.argtypes = [ctypes.c_void_p]
    lib.CFRelease.restype = None


def _cfstring_to_str(cf_string: int | None) -> str:
    _, cf = _load_frameworks()
    if not cf_string:
        return ""
    try:
        length = cf.CFStringGetLength(cf_string)
        size = cf.CFStringGetMaximumSizeForEncoding(length, kCFStringEncodingUTF8) + 1
        buf = ctypes.create_string_buffer(size)
        if not cf.CFStringGetCString(cf_string, buf, size, kCFStringEncodingUTF8):
            return ""
        return buf.value.decode("utf-8")
    finally:
        cf.CFRelease(cf_string)


class CoreAudioBackend(AudioBackend):
    """AudioBackend talking to the HAL through AudioObject properties."""

    def __init__(self) -> None:
        self._ca, _ = _load_frameworks()

    # ── Property primitives ────────────────────────────────────────

    @staticmethod
    def _address(selector: int, scope: int = kAudioObjectPropertyScopeGlobal,
                 element: int = kAudioObjectPropertyElementMain) -> AudioObjectPropertyAddress:
        return AudioObjectPropertyAddress(selector, scope, element)

    def _has(self, object_id: int, address: AudioObjectPropertyAddress) -> bool:
        return bool(self._ca.AudioObjectHasProperty(object_id, ctypes.byref(address)))

    def _settable(self, object_id: int, address: AudioObjectPropertyAddress) -> bool:
        if not self._has(object_id, address):
            return False
        settable = Boolean(0)
        status = self._ca.AudioObjectIsPropertySettable(object_id, ctypes.byref(address), ctypes.byref(settable))
        return status == 0 and bool(settable.value)

    def _get(self, object_id: int, address: AudioObjectPropertyAddress, value: ctypes._SimpleCData, what: str):
        size = ctypes.c_uint32(ctypes.sizeof(value))
        status = self._ca.AudioObjectGetPropertyData(
            object_id, ctypes.byref(address), 0, None, ctypes.byref(size), ctypes.byref(value),
        )
        if status != 0:
            raise CoreAudioError(f"Failed to read {what}", status)
        return value.value

    def _set(self, object_id: int, address: AudioObjectPropertyAddress, value: ctypes._SimpleCData, what: str) -> None:
        status = self._ca.AudioObjectSetPropertyData(
            object_id, ctypes.byref(address), 0, None, ctypes.sizeof(value), ctypes.byref(value),
        )
        if status != 0:
            raise CoreAudioError(f"Failed to set {what}", status)

    def _get_string(self, object_id: int, selector: int, what: str) -> str:
        address = self._address(selector)
        ref = CFStringRef()
        size = ctypes.c_uint32(ctypes.sizeof(ref))
        status = self._ca.AudioObjectGetPropertyData(
            object_id, ctypes.byref(address), 0, None, ctypes.byref(size), ctypes.byref(ref),
        )
        if status != 0:
            raise CoreAudioError(f"Failed to read {what}", status)
        return _cfstring_to_str(ref.value)

    def _volume_elements(self, device_id: int, scope: Scope, *, for_write: bool) -> list[int]:
        ca_scope = _SCOPES[scope]
        check = self._settable if for_write else self._has
        if check(device_id, self._address(kAudioDevicePropertyVolumeScalar, ca_scope)):
            return [kAudioObjectPropertyElementMain]
        return [
            ch for ch in STEREO_CHANNELS
            if check(device_id, self._address(kAudioDevicePropertyVolumeScalar, ca_scope, ch))
        ]

    # ── AudioBackend ───────────────────────────────────────────────

    def default_device(self, scope: Scope) -> int:
        address = self._address(_DEFAULT_DEVICE_SELECTORS[scope])
        device_id = self._get(kAudioObjectSystemObject, address, AudioObjectID(0), f"default {scope.value} device")
        if device_id == kAudioObjectUnknown:
            raise NoDeviceError(f"No default {scope.value} device")
        return int(device_id)

    def set_default_device(self, scope: Scope, device_id: int) -> None:
        address = self._address(_DEFAULT_DEVICE_SELECTORS[scope])
        self._set(kAudioObjectSystemObject, address, AudioObjectID(device_id), f"default {scope.value} device")

    def get_volume(self, device_id: int, scope: Scope) -> float:
        elements = self._volume_elements(device_id, scope, for_write=False)
        if not elements:
            raise CoreAudioError(f"Device {device_id} has no {scope.value} volume control")
        values = [
            self._get(
                device_id,
                self._address(kAudioDevicePropertyVolumeScalar, _SCOPES[scope], el),
                ctypes.c_float(0.0),
                f"{scope.value} volume",
            )
            for el in elements
        ]
        return float(sum(values) / len(values))

    def set_volume(self, device_id: int, scope: Scope, value: float) -> None:
        elements = self._volume_elements(device_id, scope, for_write=True)
        if not elements:
            raise CoreAudioError(f"Device {device_id} has no settable {scope.value} volume")
        for el in elements:
            self._set(
                device_id,
                self._address(kAudioDevicePropertyVolumeScalar, _SCOPES[scope], el),
                ctypes.c_float(value),
                f"{scope.value} volume",
            )

    def has_mute(self, device_id: int, scope: Scope) -> bool:
        return self._settable(device_id, self._address(kAudioDevicePropertyMute, _SCOPES[scope]))

    def get_mute(self, device_id: int, scope: Scope) -> bool:
        address = self._address(kAudioDevicePropertyMute, _SCOPES[scope])
        if not self._has(device_id, address):
            return False
        return self._get(device_id, address, ctypes.c_uint32(0), f"{scope.value} mute") == 1

    def set_mute(self, device_id: int, scope: Scope, muted: bool) -> None:
        address = self._address(kAudioDevicePropertyMute, _SCOPES[scope])
        self._set(device_id, address, ctypes.c_uint32(1 if muted else 0), f"{scope.value} mute")

    def device_name(self, device_id: int) -> str:
        return self._get_string(device_id, kAudioObjectPropertyName, "device name")

    def device_uid(self, device_id: int) -> str:
        return self._get_string(device_id, kAudioDevicePropertyDeviceUID, "device UID")

    def _all_device_ids(self) -> list[int]:
        address = self._address(kAudioHardwarePropertyDevices)
        size = ctypes.c_uint32(0)
        status = self._ca.AudioObjectGetPropertyDataSize(
            kAudioObjectSystemObject, ctypes.byref(address), 0, None, ctypes.byref(size),
        )
        if status != 0:
            raise CoreAudioError("Failed to get device list size", status)
        count = size.value // ctypes.sizeof(AudioObjectID)
        if count == 0:
            return []
        ids = (AudioObjectID * count)()
        status = self._ca.AudioObjectGetPropertyData(
            kAudioObjectSystemObject, ctypes.byref(address), 0, None, ctypes.byref(size), ids,
        )
        if status != 0:
            raise CoreAudioError("Failed to get device list", status)
        return list(ids)

    def _has_streams(self, device_id: int, scope: Scope) -> bool:
        address = self._address(kAudioDevicePropertyStreams, _SCOPES[scope])
        size = ctypes.c_uint32(0)
        status = self._ca.AudioObjectGetPropertyDataSize(device_id, ctypes.byref(address), 0, None, ctypes.byref(size))
        return status == 0 and size.value > 0

    def list_devices(self, scope: Scope) -> list[AudioDevice]:
        try:
            default_id = self.default_device(scope)
        except NoDeviceError:
            default_id = kAudioObjectUnknown
        devices = []
        for device_id in self._all_device_ids():
            if not self._has_streams(device_id, scope):
                continue
            try:
                name = self.device_name(device_id)
                uid = self.device_uid(device_id)
            except CoreAudioError:
                logger.debug("Skipping device %d without name/UID", device_id, exc_info=True)
                continue
            devices.append(AudioDevice(id=device_id, name=name, uid=uid, is_default=device_id == default_id))
        return devices
