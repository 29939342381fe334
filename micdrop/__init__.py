"""
MicDrop - Microphone & Volume Remote for macOS

A menu bar app that toggles the microphone and output volume through Core Audio
and exposes those controls over a local HTTP webhook (iOS Shortcuts, browsers,
and the MicDrop Chrome extension bridge).
"""

__version__ = "1.4.0"
__author__ = "micdrop"

from micdrop.config import Config

__all__ = ["Config", "__version__"]
