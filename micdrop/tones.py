from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import sounddevice as sd

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from micdrop.config import ToneConfig

logger = logging.getLogger(__name__)

TONE_SAMPLE_RATE = 44_100
TONE_DURATION_SECONDS = 0.06
FADE_IN_SECONDS = 0.002
DECAY_RATE = 60.0


def synth_soft_pop(freq: int, vol: float, sr: int = TONE_SAMPLE_RATE) -> "NDArray":
    n = int(sr * TONE_DURATION_SECONDS)
    t = np.arange(n, dtype=np.float32) / sr
    env = np.exp(-t * DECAY_RATE)
    tone = np.sin(2.0 * np.pi * freq * t) * env * vol
    fade_in = min(int(sr * FADE_IN_SECONDS), n)
    tone[:fade_in] *= np.linspace(0, 1, fade_in, dtype=np.float32)
    return tone.astype(np.float32)


def play_tone(config: "ToneConfig", frequency_hz: int) -> None:
    """Play a short non-blocking cue. Lower pitch for mute, higher for unmute."""
    if not config.enabled or frequency_hz <= 0:
        return
    tone = synth_soft_pop(frequency_hz, config.volume)
    sd.play(tone, TONE_SAMPLE_RATE, blocking=False)
