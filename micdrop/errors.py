"""Exception types shared by the audio adapter, HTTP endpoint, and bridge."""

from __future__ import annotations


class MicDropError(Exception):
    """Base class for all MicDrop errors."""


class AudioError(MicDropError):
    """An OS audio call failed. Controller state is left unchanged."""


class NoDeviceError(AudioError):
    """No default input/output device is available."""


class CoreAudioError(AudioError):
    """A Core Audio call returned a non-zero OSStatus."""

    def __init__(self, message: str, status: int = 0) -> None:
        self.status = status
        if status:
            message = f"{message} (OSStatus {status})"
        super().__init__(message)


class ValidationError(MicDropError):
    """A request body or setting value is malformed or out of range."""


class ServerError(MicDropError):
    """The HTTP control endpoint could not be started."""


class PortInUseError(ServerError):
    def __init__(self, port: int, owner: str | None = None) -> None:
        self.port = port
        self.owner = owner
        msg = f"Port {port} is already in use"
        if owner:
            msg += f" by {owner}"
        super().__init__(msg)
