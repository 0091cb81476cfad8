"""Voice activity detection driven by frame loudness.

The detector keeps a "silence clock" that only advances by the duration of
the frames it is given, so it cannot run while frame delivery is paused.
Once speech has been heard, sustained silence of ``silence_duration_ms``
raises a one-shot auto-stop signal.
"""

from __future__ import annotations

import logging

from convorec.constants import (
    DEFAULT_MIN_RECORDING_MS,
    DEFAULT_SILENCE_DURATION_MS,
    DEFAULT_SILENCE_THRESHOLD_DB,
    DEFAULT_SPEAKING_THRESHOLD_DB,
)
from convorec.level import to_db

logger = logging.getLogger(__name__)


class VoiceActivityDetector:
    """Classifies frames as speech or silence and signals auto-stop.

    Parameters
    ----------
    speaking_threshold_db : float
        Loudness above this resets the silence clock and marks speech.
    silence_threshold_db : float
        Loudness below this accumulates silence.
    silence_duration_ms : int
        Accumulated silence that triggers the auto-stop signal.
    min_recording_ms : int
        Active audio that must have been processed before the first
        auto-stop may fire. ``0`` disables the guard.
    """

    def __init__(
        self,
        speaking_threshold_db: float = DEFAULT_SPEAKING_THRESHOLD_DB,
        silence_threshold_db: float = DEFAULT_SILENCE_THRESHOLD_DB,
        silence_duration_ms: int = DEFAULT_SILENCE_DURATION_MS,
        min_recording_ms: int = DEFAULT_MIN_RECORDING_MS,
    ):
        if silence_threshold_db > speaking_threshold_db:
            raise ValueError(
                "silence_threshold_db must not exceed speaking_threshold_db "
                f"({silence_threshold_db} > {speaking_threshold_db})"
            )
        if silence_duration_ms <= 0:
            raise ValueError(f"silence_duration_ms must be positive, got {silence_duration_ms}")
        if min_recording_ms < 0:
            raise ValueError(f"min_recording_ms must be >= 0, got {min_recording_ms}")

        self._speaking_db = speaking_threshold_db
        self._silence_db = silence_threshold_db
        self._silence_duration_ms = silence_duration_ms
        self._min_recording_ms = min_recording_ms

        self._speaking = False
        self._silence_ms: float | None = None
        self._active_ms = 0.0

    # -- public API --

    def process(self, level: float, frame_seconds: float) -> bool:
        """Feed one frame's level; return True when auto-stop should fire."""
        db = to_db(level)
        self._active_ms += frame_seconds * 1000.0

        if db > self._speaking_db:
            if not self._speaking:
                logger.debug("Speech detected at %.0f ms", self._active_ms)
            self._speaking = True
            self._silence_ms = None
            return False

        if not self._speaking:
            return False

        if db < self._silence_db:
            if self._silence_ms is None:
                self._silence_ms = 0.0
            self._silence_ms += frame_seconds * 1000.0
        elif self._silence_ms is not None:
            # Voice came back above the silence floor before the timeout.
            self._silence_ms = None
            return False

        if self._silence_ms is None or self._silence_ms < self._silence_duration_ms:
            return False
        if self._active_ms < self._min_recording_ms:
            return False

        logger.debug(
            "Silence for %.0f ms after %.0f ms of audio; auto-stop",
            self._silence_ms, self._active_ms,
        )
        self._speaking = False
        self._silence_ms = None
        return True

    def resume(self) -> None:
        """Drop any silence clock in progress (call after a pause)."""
        self._silence_ms = None

    def reset(self) -> None:
        """Reset all state for a new recording session."""
        self._speaking = False
        self._silence_ms = None
        self._active_ms = 0.0

    @property
    def speaking(self) -> bool:
        return self._speaking

    @property
    def silence_ms(self) -> float:
        return self._silence_ms or 0.0

    @property
    def active_ms(self) -> float:
        return self._active_ms
