"""Exception hierarchy for the capture pipeline.

Every error raised on purpose by convorec derives from :class:`ConvorecError`
so the CLI can turn any of them into a readable message.
"""

from __future__ import annotations


class ConvorecError(Exception):
    """Base exception for all convorec errors."""


class DeviceAcquisitionError(ConvorecError):
    """The microphone could not be opened (permission denied, busy, missing)."""


class TranscriptionError(ConvorecError):
    """The speech recognizer failed. Never retried automatically."""


class EmptyTranscriptError(ConvorecError):
    """No speech was transcribed, so there is nothing to persist."""

    def __init__(self, detail: str = "Transcript is empty; nothing to persist"):
        super().__init__(detail)


class PersistenceError(ConvorecError):
    """The primary save failed. The recording bundle is kept for a retry."""


class AnalysisError(ConvorecError):
    """Enrichment of a saved conversation failed. Logged, never propagated."""

    def __init__(self, record_id: str, detail: str):
        self.record_id = record_id
        super().__init__(f"Analysis failed for {record_id}: {detail}")


class InvalidTransitionError(ConvorecError):
    """The requested operation is not allowed in the current recording state."""

    def __init__(self, operation: str, state):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while {state.value}")
