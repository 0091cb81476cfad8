"""Microphone ownership and per-frame fan-out for one recording session."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import numpy as np

from convorec.chunking import ChunkScheduler
from convorec.constants import DEFAULT_MAX_CHUNK_SECONDS
from convorec.encoding import Encoder, WavEncoder
from convorec.events import CaptureFailed, ChunkClosed, EventSink, SilenceDetected
from convorec.level import LevelMonitor
from convorec.models import AudioChunk
from convorec.recorder.base import Recorder, RecordingConfig
from convorec.registry import SessionRegistry, default_registry
from convorec.vad import VoiceActivityDetector

logger = logging.getLogger(__name__)

FrameSink = Callable[[np.ndarray, int, int], None]


class AudioCaptureSession:
    """Owns the recorder for the lifetime of one recording session.

    Every block delivered by the recorder is measured (LevelMonitor),
    classified (VoiceActivityDetector), segmented (ChunkScheduler) and then
    forwarded to *frame_sink*. Outcomes are published to *sink* as events;
    this object never reaches into the caller's state. All of this runs on
    the driver thread and must not block.

    The device is released on :meth:`close`, on any error during
    :meth:`open`, and when used as a context manager, on exit.
    """

    def __init__(
        self,
        recorder: Recorder,
        sink: EventSink,
        config: RecordingConfig | None = None,
        vad: VoiceActivityDetector | None = None,
        max_chunk_seconds: float = DEFAULT_MAX_CHUNK_SECONDS,
        encoder: Encoder | None = None,
        frame_sink: FrameSink | None = None,
        level_monitor: LevelMonitor | None = None,
        registry: SessionRegistry | None = None,
    ):
        self._recorder = recorder
        self._sink = sink
        self._config = config or RecordingConfig()
        self._vad = vad
        self._max_chunk_seconds = max_chunk_seconds
        self._encoder = encoder or WavEncoder()
        self._frame_sink = frame_sink
        self._monitor = level_monitor or LevelMonitor(channels=self._config.channels)
        self._registry = registry or default_registry

        self._lock = threading.Lock()
        self._scheduler: Optional[ChunkScheduler] = None
        self._opened = False
        self._closed = False
        self._paused = False
        self._failed = False
        self._level = 0.0
        self._frames_captured = 0
        self._sample_rate = self._config.sample_rate

    # -- lifecycle --

    def open(self) -> None:
        """Acquire the device. Raises DeviceAcquisitionError on failure."""
        if self._opened:
            raise RuntimeError("Capture session already opened")
        self._registry.claim_device(self)
        try:
            self._recorder.open(self._config, self._on_frames)
        except BaseException:
            self._registry.release_device(self)
            raise
        self._opened = True
        if self._vad is not None:
            self._vad.reset()

    def pause(self) -> None:
        with self._lock:
            self._paused = True
            self._level = 0.0
        self._recorder.pause()

    def resume(self) -> None:
        with self._lock:
            if self._vad is not None:
                self._vad.resume()
            self._paused = False
        self._recorder.resume()

    def close(self, flush: bool = True) -> list[AudioChunk]:
        """Release the device and return the trailing chunk, if any.

        With ``flush=False`` (or after a processing failure) the open chunk
        is dropped. Idempotent: later calls return an empty list.
        """
        with self._lock:
            if self._closed:
                return []
            self._closed = True
            self._level = 0.0
        try:
            self._recorder.close()
        finally:
            self._registry.release_device(self)

        # No callbacks can run once the recorder is closed.
        if self._scheduler is None or self._failed or not flush:
            return []
        tail = self._scheduler.flush()
        return [tail] if tail is not None else []

    def __enter__(self) -> AudioCaptureSession:
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- state --

    @property
    def level(self) -> float:
        return self._level

    @property
    def captured_seconds(self) -> float:
        if not self._sample_rate:
            return 0.0
        return self._frames_captured / self._sample_rate

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    # -- driver thread --

    def _on_frames(self, frames: np.ndarray, sample_rate: int, channels: int) -> None:
        with self._lock:
            if self._closed or self._paused or self._failed:
                return
            try:
                self._process(frames, sample_rate, channels)
            except Exception as exc:
                logger.exception("Audio frame processing failed")
                self._failed = True
                self._sink(CaptureFailed(exc))
                return

        if self._frame_sink is not None:
            self._frame_sink(frames, sample_rate, channels)

    def _process(self, frames: np.ndarray, sample_rate: int, channels: int) -> None:
        if self._scheduler is None:
            self._sample_rate = sample_rate
            self._scheduler = ChunkScheduler(
                max_chunk_seconds=self._max_chunk_seconds,
                sample_rate=sample_rate,
                channels=channels,
                encoder=self._encoder,
            )

        n_frames = frames.size // channels
        frame_seconds = n_frames / sample_rate
        self._frames_captured += n_frames

        level = self._monitor.measure(frames)
        self._level = level

        if self._vad is not None and self._vad.process(level, frame_seconds):
            self._sink(SilenceDetected(self.captured_seconds))

        for chunk in self._scheduler.feed(frames):
            logger.debug("Closed chunk %d (%.1fs)", chunk.index, chunk.duration_seconds)
            self._sink(ChunkClosed(chunk))
