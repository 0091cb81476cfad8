"""Abstract recorder interface and shared data types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from convorec.constants import DEFAULT_BLOCKSIZE, DEFAULT_CHANNELS, DEFAULT_SAMPLE_RATE

# callback(frames, sample_rate, channels), called from the driver thread
FrameCallback = Callable[[np.ndarray, int, int], None]


@dataclass
class RecordingConfig:
    """Configuration for an input stream."""
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS
    dtype: str = "int16"
    device: Optional[int | str] = None
    blocksize: int = DEFAULT_BLOCKSIZE


class Recorder(ABC):
    """Exclusive handle on one audio input device.

    Frames are pushed to the callback given to :meth:`open` until the
    recorder is paused or closed.
    """

    @abstractmethod
    def open(self, config: RecordingConfig, callback: FrameCallback) -> None:
        """Acquire the device and start delivering frames.

        Raises DeviceAcquisitionError if the device cannot be opened.
        """
        ...

    @abstractmethod
    def pause(self) -> None:
        """Stop frame delivery while keeping the device acquired."""
        ...

    @abstractmethod
    def resume(self) -> None:
        """Restart frame delivery after :meth:`pause`."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the device. Safe to call more than once."""
        ...

    @abstractmethod
    def is_open(self) -> bool:
        ...

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Actual sample rate of the open stream."""
        ...

    @property
    @abstractmethod
    def device_name(self) -> str:
        ...
