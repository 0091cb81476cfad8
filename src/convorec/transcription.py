"""Live transcription: recognizer adapters and the per-recording session.

A :class:`SpeechRecognizer` turns a stream of audio frames into partial
(cumulative) and final transcript callbacks. :class:`TranscriptionSession`
wraps one recognizer for one recording and turns those callbacks into
events for the state machine.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

import numpy as np

from convorec.constants import DEFAULT_PARTIAL_INTERVAL
from convorec.errors import TranscriptionError
from convorec.events import EventSink, TranscriptFailed, TranscriptFinal, TranscriptPartial
from convorec.level import to_mono_float
from convorec.registry import SessionRegistry, default_registry

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], None]

# engine(audio_int16_mono, sample_rate) -> text
BatchEngine = Callable[[np.ndarray, int], str]


class SpeechRecognizer(ABC):
    """A continuous recognition channel.

    ``on_partial`` receives the cumulative transcript of the current run,
    not a delta. ``stop`` must deliver ``on_final`` (or ``on_error``) before
    it returns; ``abort`` tears down without delivering anything.
    """

    @abstractmethod
    def start(
        self, on_partial: TextCallback, on_final: TextCallback, on_error: TextCallback
    ) -> None:
        ...

    @abstractmethod
    def accept(self, frames: np.ndarray, sample_rate: int, channels: int = 1) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def abort(self) -> None:
        ...


class StreamingRecognizer(SpeechRecognizer):
    """Pseudo-streaming recognition on top of a batch engine.

    Audio is buffered on a background worker. Every *interval_seconds* of
    new audio the buffered utterance is re-transcribed and the cumulative
    text is reported as a partial. Once the buffer exceeds
    *max_window_seconds* its text is committed and a new window begins.
    :meth:`stop` transcribes what is left, reports the final text and joins
    the worker.

    Parameters
    ----------
    engine : BatchEngine
        ``engine(audio_int16, sample_rate) -> str``.
    interval_seconds : float
        Audio between partial updates.
    max_window_seconds : float
        Longest window re-transcribed at once.
    timeout : float
        Seconds :meth:`stop` waits for the worker.
    """

    def __init__(
        self,
        engine: BatchEngine,
        interval_seconds: float = DEFAULT_PARTIAL_INTERVAL,
        max_window_seconds: float = 30.0,
        timeout: float = 300,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self._engine = engine
        self._interval = interval_seconds
        self._max_window = max(max_window_seconds, interval_seconds)
        self._timeout = timeout

        self._queue: queue.Queue = queue.Queue()
        self._worker: threading.Thread | None = None
        self._aborted = threading.Event()
        self._on_partial: TextCallback | None = None
        self._on_final: TextCallback | None = None
        self._on_error: TextCallback | None = None

    # -- public API --

    def start(self, on_partial, on_final, on_error) -> None:
        if self._worker is not None:
            raise TranscriptionError("Recognizer already started")
        self._on_partial = on_partial
        self._on_final = on_final
        self._on_error = on_error
        self._aborted.clear()
        self._queue = queue.Queue()
        self._worker = threading.Thread(target=self._run, daemon=True)
        self._worker.start()

    def accept(self, frames: np.ndarray, sample_rate: int, channels: int = 1) -> None:
        if self._worker is None:
            return
        audio = to_mono_float(np.asarray(frames), channels)
        pcm = (audio * 32768.0).clip(-32768, 32767).astype(np.int16)
        self._queue.put((pcm, sample_rate))

    def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        self._queue.put(None)  # sentinel
        worker.join(timeout=self._timeout)
        if worker.is_alive():
            self._aborted.set()
            raise TranscriptionError(
                f"Recognizer did not finish within {self._timeout:.0f}s"
            )

    def abort(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        self._aborted.set()
        self._queue.put(None)
        worker.join(timeout=1.0)

    # -- internal --

    def _run(self) -> None:
        committed: list[str] = []
        window: list[np.ndarray] = []
        window_samples = 0
        since_partial = 0
        sample_rate = 0
        failed = False

        while True:
            item = self._queue.get()
            if self._aborted.is_set():
                return
            if item is None:
                break
            if failed:
                continue

            pcm, sample_rate = item
            window.append(pcm)
            window_samples += pcm.size
            since_partial += pcm.size

            if since_partial < self._interval * sample_rate:
                continue
            since_partial = 0
            try:
                text = self._transcribe(window, sample_rate)
            except Exception as exc:
                failed = True
                self._on_error(str(exc))
                continue
            if window_samples >= self._max_window * sample_rate:
                committed.append(text)
                window = []
                window_samples = 0
            self._on_partial(_join(committed + [text]))

        if failed:
            return
        try:
            tail = self._transcribe(window, sample_rate) if window else ""
        except Exception as exc:
            self._on_error(str(exc))
            return
        self._on_final(_join(committed + [tail]))

    def _transcribe(self, window: list[np.ndarray], sample_rate: int) -> str:
        return self._engine(np.concatenate(window), sample_rate).strip()


class ScriptedRecognizer(SpeechRecognizer):
    """Deterministic recognizer that replays a fixed transcript.

    Each *seconds_per_step* of accepted audio reveals the next entry of
    *script* as a partial; :meth:`stop` finalizes whatever has been
    revealed. ``fail_at`` makes the given step report an error instead.
    Callbacks run synchronously on the thread that delivers audio.
    """

    def __init__(
        self,
        script: Sequence[str] = (),
        seconds_per_step: float = 1.0,
        fail_at: Optional[int] = None,
        fail_on_start: bool = False,
    ):
        self._script = list(script)
        self._seconds_per_step = seconds_per_step
        self._fail_at = fail_at
        self._fail_on_start = fail_on_start
        self._callbacks: Optional[tuple[TextCallback, TextCallback, TextCallback]] = None
        self._step = 0
        self._heard = 0
        self._text = ""
        self.starts = 0
        self.stops = 0
        self.aborts = 0

    def start(self, on_partial, on_final, on_error) -> None:
        if self._fail_on_start:
            raise TranscriptionError("Speech recognition not available")
        self._callbacks = (on_partial, on_final, on_error)
        self._heard = 0
        self._text = ""
        self.starts += 1

    def accept(self, frames: np.ndarray, sample_rate: int, channels: int = 1) -> None:
        if self._callbacks is None:
            return
        on_partial, _, on_error = self._callbacks
        self._heard += np.asarray(frames).size // channels
        step = int(round(self._seconds_per_step * sample_rate))
        while self._heard >= step and self._step < len(self._script):
            self._heard -= step
            if self._fail_at is not None and self._step == self._fail_at:
                self._step += 1
                on_error("network")
                return
            word = self._script[self._step]
            self._step += 1
            self._text = _join([self._text, word])
            on_partial(self._text)

    def stop(self) -> None:
        if self._callbacks is None:
            return
        _, on_final, _ = self._callbacks
        self._callbacks = None
        self.stops += 1
        on_final(self._text)

    def abort(self) -> None:
        if self._callbacks is None:
            return
        self._callbacks = None
        self.aborts += 1


class TranscriptionSession:
    """One recognizer, started and stopped in lockstep with audio capture.

    Every :meth:`start` opens a new *generation*; events carry their
    generation so the consumer can discard anything from an earlier run.
    Failures are reported as :class:`TranscriptFailed` events and never
    retried.
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        sink: EventSink,
        registry: SessionRegistry | None = None,
    ):
        self._recognizer = recognizer
        self._sink = sink
        self._registry = registry or default_registry
        self._generation = 0
        self._running = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            raise TranscriptionError("Transcription already running")
        self._generation += 1
        gen = self._generation
        self._registry.activate(self)
        try:
            self._recognizer.start(
                on_partial=lambda text: self._sink(TranscriptPartial(gen, text)),
                on_final=lambda text: self._sink(TranscriptFinal(gen, text)),
                on_error=lambda reason: self._sink(TranscriptFailed(gen, reason)),
            )
        except TranscriptionError:
            self._registry.deactivate(self)
            raise
        except Exception as exc:
            self._registry.deactivate(self)
            raise TranscriptionError(f"Recognizer failed to start: {exc}") from exc
        self._running = True
        logger.debug("Transcription run %d started", gen)

    def feed(self, frames: np.ndarray, sample_rate: int, channels: int = 1) -> None:
        if not self._running:
            return
        try:
            self._recognizer.accept(frames, sample_rate, channels)
        except Exception as exc:
            self._running = False
            self._sink(TranscriptFailed(self._generation, str(exc)))

    def stop(self) -> None:
        """Close the channel cleanly; the final result is delivered first."""
        if not self._running:
            return
        self._running = False
        try:
            self._recognizer.stop()
        finally:
            self._registry.deactivate(self)
        logger.debug("Transcription run %d stopped", self._generation)

    def abort(self) -> None:
        """Tear down without a final result. Safe to call repeatedly."""
        was_running, self._running = self._running, False
        self._generation += 1
        self._registry.deactivate(self)
        if was_running:
            self._recognizer.abort()


def _join(parts: list[str]) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())
