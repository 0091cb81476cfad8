"""Recording state machine that drives capture, transcription and persistence.

Producers (the audio driver thread and the recognizer) only put events on a
queue. The machine applies them in its own methods, so a
:class:`~convorec.models.RecordingSession` is only ever mutated by the
thread driving the machine. Hosts call :meth:`RecordingStateMachine.poll`
periodically to apply pending events, VAD auto-stop included.
"""

from __future__ import annotations

import logging
import queue
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from convorec.capture import AudioCaptureSession
from convorec.constants import DEFAULT_MAX_CHUNK_SECONDS
from convorec.encoding import Encoder
from convorec.errors import (
    EmptyTranscriptError,
    InvalidTransitionError,
    PersistenceError,
    TranscriptionError,
)
from convorec.events import (
    CaptureFailed,
    ChunkClosed,
    SilenceDetected,
    TranscriptFailed,
    TranscriptFinal,
    TranscriptPartial,
)
from convorec.models import RecordingBundle, RecordingSession, RecordingState
from convorec.persister import ConversationPersister
from convorec.recorder.base import Recorder, RecordingConfig
from convorec.registry import SessionRegistry, default_registry
from convorec.transcription import SpeechRecognizer, TranscriptionSession
from convorec.vad import VoiceActivityDetector

logger = logging.getLogger(__name__)

StateCallback = Callable[[RecordingState, RecordingState], None]

_TRANSCRIPT_EVENTS = (TranscriptPartial, TranscriptFinal, TranscriptFailed)


class RecordingStateMachine:
    """Idle → Recording ⇄ Paused → Stopped → Uploading → Idle.

    Parameters
    ----------
    recorder : Recorder
        Input device back-end, opened on every :meth:`start`.
    recognizer_factory : callable
        Returns a fresh :class:`SpeechRecognizer` for each recording.
    persister : ConversationPersister | None
        Required for :meth:`persist`.
    recording_config : RecordingConfig | None
        Stream settings passed to the recorder.
    vad : VoiceActivityDetector | None
        Auto-stop detector; ``None`` disables auto-stop.
    max_chunk_seconds : float
        Longest continuous audio chunk; ``0`` disables splitting.
    encoder : Encoder | None
        Chunk payload encoder (WAV when omitted).
    registry : SessionRegistry | None
        Device and recognizer ownership; the process-wide one by default.
    clock : callable
        Monotonic time source for the elapsed-time timer.
    """

    def __init__(
        self,
        recorder: Recorder,
        recognizer_factory: Callable[[], SpeechRecognizer],
        persister: Optional[ConversationPersister] = None,
        recording_config: Optional[RecordingConfig] = None,
        vad: Optional[VoiceActivityDetector] = None,
        max_chunk_seconds: float = DEFAULT_MAX_CHUNK_SECONDS,
        encoder: Optional[Encoder] = None,
        registry: Optional[SessionRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._recorder = recorder
        self._recognizer_factory = recognizer_factory
        self._persister = persister
        self._recording_config = recording_config or RecordingConfig()
        self._vad = vad
        self._max_chunk_seconds = max_chunk_seconds
        self._encoder = encoder
        self._registry = registry or default_registry
        self._clock = clock

        self._state = RecordingState.IDLE
        self._session: Optional[RecordingSession] = None
        self._capture: Optional[AudioCaptureSession] = None
        self._transcription: Optional[TranscriptionSession] = None
        self._events: queue.Queue = queue.Queue()
        self._listeners: list[StateCallback] = []
        self._last_error: Optional[BaseException] = None

        # Set while applying events; acted on once the queue is drained.
        self._failure: Optional[BaseException] = None
        self._silence_at: Optional[float] = None

        self.stop_reason: Optional[str] = None
        self.auto_stopped_at: Optional[float] = None
        self._reset_timer()

    # -- state --

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def session(self) -> Optional[RecordingSession]:
        return self._session

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    @property
    def elapsed_seconds(self) -> float:
        """Recording time excluding every paused interval; frozen at stop."""
        if self._started_at is None:
            return 0.0
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        paused = self._paused_total
        if self._pause_began is not None:
            paused += end - self._pause_began
        return max(0.0, end - self._started_at - paused)

    @property
    def bundle(self) -> Optional[RecordingBundle]:
        """The finalized recording, available once stopped."""
        if self._session is None or self._state not in (
            RecordingState.STOPPED, RecordingState.UPLOADING, RecordingState.FAILED,
        ):
            return None
        return RecordingBundle(
            chunks=list(self._session.chunks),
            transcript=self._session.transcript,
            duration_seconds=round(self.elapsed_seconds, 3),
        )

    def live_transcript(self) -> str:
        """Transcript as of the last applied event."""
        return self._session.transcript if self._session is not None else ""

    def audio_level(self) -> float:
        if self._capture is None or self._state is not RecordingState.RECORDING:
            return 0.0
        return self._capture.level

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register ``callback(old, new)``; returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    # -- operations --

    def start(self) -> None:
        """Acquire the microphone and begin recording and transcribing.

        Raises DeviceAcquisitionError (state stays Idle) if the device can't
        be opened, and TranscriptionError (device released, state stays
        Idle) if the recognizer fails to start.
        """
        if self._state is not RecordingState.IDLE:
            raise InvalidTransitionError("start", self._state)

        events: queue.Queue = queue.Queue()
        transcription = TranscriptionSession(
            self._recognizer_factory(), events.put, registry=self._registry
        )
        capture = AudioCaptureSession(
            self._recorder,
            events.put,
            config=self._recording_config,
            vad=self._vad,
            max_chunk_seconds=self._max_chunk_seconds,
            encoder=self._encoder,
            frame_sink=transcription.feed,
            registry=self._registry,
        )

        try:
            capture.open()
        except Exception as exc:
            self._last_error = exc
            raise
        try:
            transcription.start()
        except TranscriptionError as exc:
            capture.close(flush=False)
            self._last_error = exc
            raise

        self._events = events
        self._capture = capture
        self._transcription = transcription
        self._session = RecordingSession(started_at=datetime.now(timezone.utc))
        self._last_error = None
        self._failure = None
        self._silence_at = None
        self.stop_reason = None
        self.auto_stopped_at = None
        self._reset_timer()
        self._started_at = self._clock()

        self._set_state(RecordingState.RECORDING)
        logger.info("Recording %s started on %s", self._session.id, self._recorder.device_name)

    def pause(self) -> bool:
        """Suspend capture and close the recognition channel.

        Returns False (and logs a warning) when not recording.
        """
        self._drain()
        if self._state is not RecordingState.RECORDING:
            logger.warning("pause() ignored while %s", self._state.value)
            return False

        self._capture.pause()
        self._pause_began = self._clock()
        try:
            self._transcription.stop()
        except TranscriptionError as exc:
            self._fail(exc)
        self._apply_pending()
        self._silence_at = None
        if self._failure is not None:
            self._abort_run()
            return False

        self._set_state(RecordingState.PAUSED)
        return True

    def resume(self) -> bool:
        """Reopen capture with a fresh recognition channel.

        Returns False (and logs a warning) when not paused.
        """
        self._drain()
        if self._state is not RecordingState.PAUSED:
            logger.warning("resume() ignored while %s", self._state.value)
            return False

        self._paused_total += self._clock() - self._pause_began
        self._pause_began = None
        self._session.paused_seconds = self._paused_total
        self._run_offset = self.elapsed_seconds
        try:
            self._transcription.start()
        except TranscriptionError as exc:
            self._fail(exc)
            self._abort_run()
        self._capture.resume()

        self._set_state(RecordingState.RECORDING)
        return True

    def stop(self) -> Optional[RecordingBundle]:
        """Finish the recording and return its bundle.

        The device is released first, then the recognizer is stopped and its
        final result applied, so the bundle holds both complete artifacts.
        Calling it again while stopped has no effect.
        """
        self._drain()
        if self._state is RecordingState.STOPPED:
            return self.bundle
        if self._state not in (RecordingState.RECORDING, RecordingState.PAUSED):
            raise InvalidTransitionError("stop", self._state)

        self._halt()
        if self._failure is not None:
            self._abort_run()
            return self.bundle
        self._finish(RecordingState.STOPPED, "manual")
        return self.bundle

    def discard(self) -> None:
        """Hard cancellation from any state. Safe to call repeatedly."""
        capture, transcription = self._capture, self._transcription
        self._capture = None
        self._transcription = None
        self._session = None
        self._events = queue.Queue()
        self._failure = None
        self._silence_at = None
        try:
            if capture is not None:
                capture.close(flush=False)
        finally:
            if transcription is not None:
                transcription.abort()
            self._reset_timer()

        if self._state is not RecordingState.IDLE:
            logger.info("Recording discarded")
            self._set_state(RecordingState.IDLE)

    def persist(
        self,
        owner_id: str,
        participant_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """Hand the stopped recording to the persister and return the record id.

        Allowed from Stopped, and from Failed to retry. Raises
        EmptyTranscriptError without any I/O when nothing was transcribed,
        and PersistenceError (state → Failed, bundle kept) when the save fails.
        """
        self._drain()
        if self._state not in (RecordingState.STOPPED, RecordingState.FAILED):
            raise InvalidTransitionError("persist", self._state)
        if self._persister is None:
            raise PersistenceError("No persister configured")

        bundle = self.bundle
        if not bundle.transcript.strip():
            raise EmptyTranscriptError()

        self._set_state(RecordingState.UPLOADING)
        try:
            record_id = self._persister.persist(
                owner_id,
                participant_id,
                bundle.transcript,
                bundle.chunks,
                bundle.duration_seconds,
                task_id=task_id,
            )
        except PersistenceError as exc:
            self._last_error = exc
            self._set_state(RecordingState.FAILED)
            raise

        self._capture = None
        self._transcription = None
        self._session = None
        self._last_error = None
        self._reset_timer()
        self._set_state(RecordingState.IDLE)
        return record_id

    def poll(self) -> RecordingState:
        """Apply pending events and return the resulting state.

        Raises TranscriptionError if the recognizer failed since the last
        call; the recording is stopped with what was captured so far.
        """
        self._drain()
        return self._state

    # -- event handling --

    def _drain(self) -> None:
        self._apply_pending()
        if self._failure is None and self._silence_at is not None:
            at, self._silence_at = self._silence_at, None
            logger.info("Silence detected at %.1fs; stopping", at)
            self.auto_stopped_at = at
            self._halt()
            if self._failure is None:
                self._finish(RecordingState.STOPPED, "silence")
        if self._failure is not None:
            self._abort_run()

    def _apply_pending(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            self._apply(event)

    def _apply(self, event: object) -> None:
        session = self._session
        if session is None:
            return

        if isinstance(event, ChunkClosed):
            session.append_chunk(event.chunk)
        elif isinstance(event, SilenceDetected):
            if self._state is RecordingState.RECORDING:
                self._silence_at = event.at_seconds
        elif isinstance(event, CaptureFailed):
            self._fail(event.error)
        elif isinstance(event, _TRANSCRIPT_EVENTS):
            if self._failure is not None or event.generation != self._transcription.generation:
                logger.debug("Dropping stale %s", type(event).__name__)
                return
            if isinstance(event, TranscriptPartial):
                session.apply_partial(event.text, self._run_offset)
            elif isinstance(event, TranscriptFinal):
                session.apply_final(event.text, self._run_offset)
            else:
                self._fail(TranscriptionError(f"Speech recognition failed: {event.reason}"))
        else:
            logger.warning("Ignoring unknown event %r", event)

    def _fail(self, error: BaseException) -> None:
        if self._failure is None:
            self._failure = error

    def _halt(self) -> None:
        """Release the device, then collect the final transcript."""
        self._stopped_at = self._clock()
        self._close_pause()
        for chunk in self._capture.close():
            self._events.put(ChunkClosed(chunk))
        try:
            self._transcription.stop()
        except TranscriptionError as exc:
            self._fail(exc)
        self._apply_pending()

    def _abort_run(self) -> None:
        """Tear down after a producer failure, keeping what was captured.

        Recognizer failures end in Stopped and are re-raised; capture
        failures end in Failed.
        """
        error, self._failure = self._failure, None
        if self._stopped_at is None:
            self._stopped_at = self._clock()
            self._close_pause()
        for chunk in self._capture.close():
            self._events.put(ChunkClosed(chunk))
        self._transcription.abort()
        self._apply_pending()
        self._failure = None
        self._last_error = error

        if isinstance(error, TranscriptionError):
            logger.error("Recording stopped: %s", error)
            self._finish(RecordingState.STOPPED, "transcription_error")
            raise error
        logger.error("Recording failed: %s", error)
        self._finish(RecordingState.FAILED, "capture_error")

    def _close_pause(self) -> None:
        # Stopping while paused counts the open pause up to the stop time.
        if self._pause_began is not None:
            self._paused_total += self._stopped_at - self._pause_began
            self._pause_began = None
        self._session.paused_seconds = self._paused_total

    def _finish(self, state: RecordingState, reason: str) -> None:
        self._silence_at = None
        self.stop_reason = reason
        self._set_state(state)
        logger.info(
            "Recording %s %s (%s, %.1fs, %d chunk(s))",
            self._session.id, state.value, reason,
            self.elapsed_seconds, len(self._session.chunks),
        )

    def _set_state(self, new: RecordingState) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        if self._session is not None:
            self._session.state = new
        logger.debug("State %s -> %s", old.value, new.value)
        for callback in list(self._listeners):
            try:
                callback(old, new)
            except Exception:
                logger.exception("State change callback failed")

    def _reset_timer(self) -> None:
        self._started_at: Optional[float] = None
        self._stopped_at: Optional[float] = None
        self._pause_began: Optional[float] = None
        self._paused_total = 0.0
        self._run_offset = 0.0
