"""Loudness measurement for level meters and voice activity detection."""

from __future__ import annotations

import math

import numpy as np

from convorec.constants import DEFAULT_FFT_SIZE, DEFAULT_LEVEL_CEILING, MIN_DB


def to_mono_float(frames: np.ndarray, channels: int = 1) -> np.ndarray:
    """Convert recorder frames to mono float32 in [-1.0, 1.0]."""
    if frames.dtype == np.int16:
        audio = frames.astype(np.float32) / 32768.0
    else:
        audio = frames.astype(np.float32)

    if audio.ndim > 1:
        return audio.reshape(audio.shape[0], -1).mean(axis=1)
    if channels > 1:
        usable = len(audio) - len(audio) % channels
        return audio[:usable].reshape(-1, channels).mean(axis=1)
    return audio


def to_db(level: float) -> float:
    """Convert a normalized level to decibels, floored at ``MIN_DB``."""
    if level <= 0.0:
        return MIN_DB
    return max(20.0 * math.log10(level), MIN_DB)


class LevelMonitor:
    """Turns audio frames into a normalized loudness value in ``[0, 1]``.

    The level is the average magnitude of the frame's frequency bins
    (Hann-windowed real FFT over the last ``fft_size`` samples) divided by
    ``ceiling`` and clamped. Each call is independent of the previous ones.
    """

    def __init__(
        self,
        fft_size: int = DEFAULT_FFT_SIZE,
        ceiling: float = DEFAULT_LEVEL_CEILING,
        channels: int = 1,
    ):
        if fft_size < 2:
            raise ValueError(f"fft_size must be >= 2, got {fft_size}")
        if ceiling <= 0:
            raise ValueError(f"ceiling must be positive, got {ceiling}")
        self._fft_size = fft_size
        self._ceiling = ceiling
        self._channels = channels
        self._window = np.hanning(fft_size).astype(np.float32)
        self._norm = float(np.sqrt(np.sum(self._window ** 2)))

    @property
    def bin_count(self) -> int:
        return self._fft_size // 2 + 1

    def measure(self, frames: np.ndarray) -> float:
        audio = to_mono_float(np.asarray(frames), self._channels)
        if audio.size == 0:
            return 0.0

        if audio.size >= self._fft_size:
            block = audio[-self._fft_size:]
        else:
            block = np.pad(audio, (self._fft_size - audio.size, 0))

        spectrum = np.abs(np.fft.rfft(block * self._window)) / self._norm
        average = float(np.mean(spectrum))
        return min(max(average / self._ceiling, 0.0), 1.0)

    def measure_db(self, frames: np.ndarray) -> float:
        return to_db(self.measure(frames))
