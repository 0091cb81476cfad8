"""Shared test fixtures."""

import pytest

from convorec.persister import ConversationPersister
from convorec.recorder import MockRecorder, RecordingConfig
from convorec.registry import SessionRegistry
from convorec.storage import MemoryConversationStore
from convorec.transcription import ScriptedRecognizer


SCRIPT = ["hello", "thanks", "for", "calling", "how", "can", "I", "help", "you", "today"]


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return MockRecorder()


@pytest.fixture
def store():
    return MemoryConversationStore()


@pytest.fixture
def recording_config():
    return RecordingConfig(sample_rate=16000, channels=1, blocksize=1024)


@pytest.fixture
def recognizers():
    """Every ScriptedRecognizer handed out by ``recognizer_factory``."""
    return []


@pytest.fixture
def recognizer_factory(recognizers):
    def factory():
        rec = ScriptedRecognizer(SCRIPT, seconds_per_step=1.0)
        recognizers.append(rec)
        return rec
    return factory


@pytest.fixture
def persister(store):
    p = ConversationPersister(store)
    yield p
    p.close()


@pytest.fixture(autouse=True)
def _isolate_convorec_logger():
    """Drop handlers other tests attached to the ``convorec`` logger."""
    import logging

    logger = logging.getLogger("convorec")
    before = list(logger.handlers)
    level = logger.level
    yield
    for h in list(logger.handlers):
        if h not in before:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(level)
