"""Audio input back-ends."""

from convorec.recorder.base import FrameCallback, Recorder, RecordingConfig
from convorec.recorder.mock_recorder import MockRecorder

__all__ = [
    "FrameCallback",
    "Recorder",
    "RecordingConfig",
    "MockRecorder",
]
