"""Events passed from producers (audio callback, recognizer) to the state machine.

Producers never touch recording state directly; they hand one of these to
an event sink (in practice ``queue.Queue.put``) and the state machine
applies them on its own thread.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from convorec.models import AudioChunk


@dataclass(frozen=True)
class ChunkClosed:
    chunk: AudioChunk


@dataclass(frozen=True)
class SilenceDetected:
    at_seconds: float


@dataclass(frozen=True)
class CaptureFailed:
    error: Exception


@dataclass(frozen=True)
class TranscriptPartial:
    generation: int
    text: str


@dataclass(frozen=True)
class TranscriptFinal:
    generation: int
    text: str


@dataclass(frozen=True)
class TranscriptFailed:
    generation: int
    reason: str


EventSink = Callable[[object], None]
