"""Global hotkey that toggles the microphone. pynput runs its own listener thread."""

from __future__ import annotations

import logging
from typing import Callable

from pynput import keyboard

logger = logging.getLogger(__name__)

DISABLED = "none"


class HotkeyManager:
    def __init__(self, combo: str, on_activate: Callable[[], None]) -> None:
        self._combo = combo
        self._on_activate = on_activate
        self._listener: keyboard.GlobalHotKeys | None = None

    @property
    def combo(self) -> str:
        return self._combo

    @property
    def is_active(self) -> bool:
        return self._listener is not None

    def _fire(self) -> None:
        try:
            self._on_activate()
        except Exception:
            logger.exception("Hotkey action failed")

    def start(self) -> bool:
        if self._listener is not None:
            return True
        if not self._combo or self._combo == DISABLED:
            logger.info("Global hotkey disabled")
            return False
        try:
            keyboard.HotKey.parse(self._combo)
        except ValueError:
            logger.error("Invalid hotkey %r", self._combo)
            return False
        listener = keyboard.GlobalHotKeys({self._combo: self._fire})
        listener.daemon = True
        listener.start()
        self._listener = listener
        logger.info("Global hotkey registered: %s", self._combo)
        return True

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None

    def rebind(self, combo: str) -> bool:
        self.stop()
        self._combo = combo
        return self.start()
