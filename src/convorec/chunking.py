"""Splits one continuous capture stream into bounded, sequential chunks."""

from __future__ import annotations

import numpy as np

from convorec.constants import DEFAULT_MAX_CHUNK_SECONDS, DEFAULT_SAMPLE_RATE
from convorec.encoding import Encoder, WavEncoder
from convorec.models import AudioChunk


class ChunkScheduler:
    """Closes the open chunk whenever it reaches ``max_chunk_seconds``.

    Boundaries are sample-accurate: an incoming block that straddles the
    limit is split, the head closes the current chunk and the tail opens the
    next one. The capture stream itself is never interrupted.
    """

    def __init__(
        self,
        max_chunk_seconds: float = DEFAULT_MAX_CHUNK_SECONDS,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channels: int = 1,
        encoder: Encoder | None = None,
    ):
        if max_chunk_seconds < 0:
            raise ValueError(f"max_chunk_seconds must be >= 0, got {max_chunk_seconds}")
        self._sample_rate = sample_rate
        self._channels = channels
        self._encoder = encoder or WavEncoder()
        # 0 disables splitting
        self._max_frames = int(round(max_chunk_seconds * sample_rate))
        self._pending: list[np.ndarray] = []
        self._pending_frames = 0
        self._next_index = 0

    def feed(self, frames: np.ndarray) -> list[AudioChunk]:
        """Append frames to the open chunk; return any chunks closed by them."""
        block = np.asarray(frames, dtype=np.int16).ravel()
        block = block[: block.size - block.size % self._channels]
        closed: list[AudioChunk] = []

        while block.size:
            n_frames = block.size // self._channels
            if self._max_frames:
                take = min(self._max_frames - self._pending_frames, n_frames)
            else:
                take = n_frames

            self._pending.append(block[: take * self._channels].copy())
            self._pending_frames += take
            block = block[take * self._channels:]

            if self._max_frames and self._pending_frames >= self._max_frames:
                closed.append(self._close())

        return closed

    def flush(self) -> AudioChunk | None:
        """Close the trailing partial chunk, if it holds any audio."""
        if self._pending_frames == 0:
            self._pending = []
            return None
        return self._close()

    @property
    def open_seconds(self) -> float:
        return self._pending_frames / self._sample_rate

    @property
    def next_index(self) -> int:
        return self._next_index

    def _close(self) -> AudioChunk:
        samples = np.concatenate(self._pending) if self._pending else np.zeros(0, dtype=np.int16)
        chunk = AudioChunk(
            index=self._next_index,
            payload=self._encoder.encode(samples, self._sample_rate, self._channels),
            duration_seconds=self._pending_frames / self._sample_rate,
            sample_rate=self._sample_rate,
            channels=self._channels,
            content_type=self._encoder.content_type,
            extension=self._encoder.extension,
        )
        self._next_index += 1
        self._pending = []
        self._pending_frames = 0
        return chunk
