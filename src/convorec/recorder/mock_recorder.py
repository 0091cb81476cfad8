"""Mock recorder for testing without audio hardware."""

from __future__ import annotations

import numpy as np

from convorec.errors import DeviceAcquisitionError
from convorec.recorder.base import FrameCallback, Recorder, RecordingConfig


class MockRecorder(Recorder):
    """A recorder whose frames are pushed in by the caller.

    Frames given to :meth:`push` reach the callback synchronously, the same
    way a driver thread would deliver them, but only while the recorder is
    open and not paused.
    """

    def __init__(self, fail_with: str | None = None):
        """
        Args:
            fail_with: If set, :meth:`open` raises DeviceAcquisitionError
                with this message (e.g. simulating denied permission).
        """
        self._fail_with = fail_with
        self._config: RecordingConfig | None = None
        self._callback: FrameCallback | None = None
        self._paused = False
        self.open_count = 0
        self.close_count = 0
        self.frames_delivered = 0

    def open(self, config: RecordingConfig, callback: FrameCallback) -> None:
        if self._fail_with is not None:
            raise DeviceAcquisitionError(self._fail_with)
        if self._callback is not None:
            raise DeviceAcquisitionError("Device already open")
        self._config = config
        self._callback = callback
        self._paused = False
        self.open_count += 1

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    def close(self) -> None:
        if self._callback is None:
            return
        self._callback = None
        self._paused = False
        self.close_count += 1

    def is_open(self) -> bool:
        return self._callback is not None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def sample_rate(self) -> int:
        return self._config.sample_rate if self._config else 0

    @property
    def device_name(self) -> str:
        return "mock"

    # -- frame injection --

    def push(self, frames: np.ndarray) -> bool:
        """Deliver frames to the callback. Returns False if they were dropped."""
        callback = self._callback
        if callback is None or self._paused:
            return False
        block = np.asarray(frames, dtype=np.int16).ravel()
        callback(block, self._config.sample_rate, self._config.channels)
        self.frames_delivered += block.size // self._config.channels
        return True

    def push_silence(self, seconds: float) -> None:
        self._push_blocks(np.zeros(self._frames_for(seconds) * self._config.channels, dtype=np.int16))

    def push_speech(self, seconds: float, amplitude: float = 0.3, seed: int = 0) -> None:
        """Push speech-like broadband noise at the given amplitude."""
        rng = np.random.default_rng(seed)
        n = self._frames_for(seconds) * self._config.channels
        noise = rng.normal(0.0, amplitude, n).clip(-1.0, 1.0)
        self._push_blocks((noise * 32767).astype(np.int16))

    def _frames_for(self, seconds: float) -> int:
        if self._config is None:
            raise RuntimeError("Not open")
        return int(round(seconds * self._config.sample_rate))

    def _push_blocks(self, audio: np.ndarray) -> None:
        step = self._config.blocksize * self._config.channels
        for start in range(0, audio.size, step):
            self.push(audio[start:start + step])
