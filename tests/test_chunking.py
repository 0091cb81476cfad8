"""Tests for chunk scheduling."""

import io
import wave

import numpy as np
import pytest

from convorec.chunking import ChunkScheduler


def _samples(chunk):
    with wave.open(io.BytesIO(chunk.payload), "rb") as wf:
        return np.frombuffer(wf.readframes(wf.getnframes()), dtype=np.int16)


def _feed_blocks(sched, audio, blocksize=1024):
    closed = []
    for start in range(0, audio.size, blocksize):
        closed.extend(sched.feed(audio[start:start + blocksize]))
    return closed


def test_no_chunk_before_limit():
    sched = ChunkScheduler(max_chunk_seconds=1, sample_rate=1000)
    assert sched.feed(np.zeros(999, dtype=np.int16)) == []
    assert sched.open_seconds == pytest.approx(0.999)


def test_closes_exactly_at_limit():
    sched = ChunkScheduler(max_chunk_seconds=1, sample_rate=1000)
    closed = sched.feed(np.zeros(1000, dtype=np.int16))
    assert len(closed) == 1
    assert closed[0].index == 0
    assert closed[0].duration_seconds == 1.0
    assert sched.open_seconds == 0.0


def test_straddling_block_is_split_without_loss():
    sched = ChunkScheduler(max_chunk_seconds=1, sample_rate=1000)
    audio = np.arange(2500, dtype=np.int16)
    closed = _feed_blocks(sched, audio, blocksize=300)
    tail = sched.flush()

    chunks = closed + [tail]
    assert [c.index for c in chunks] == [0, 1, 2]
    assert [c.duration_seconds for c in chunks] == [1.0, 1.0, 0.5]
    np.testing.assert_array_equal(np.concatenate([_samples(c) for c in chunks]), audio)


def test_one_block_spanning_several_chunks():
    sched = ChunkScheduler(max_chunk_seconds=1, sample_rate=100)
    closed = sched.feed(np.ones(350, dtype=np.int16))
    assert [c.index for c in closed] == [0, 1, 2]
    assert sched.open_seconds == pytest.approx(0.5)


def test_six_minutes_with_five_minute_limit():
    """Chunk 0 closes at exactly 5:00 and chunk 1 continues with no gap."""
    rate = 1000
    sched = ChunkScheduler(max_chunk_seconds=300, sample_rate=rate)
    audio = (np.arange(360 * rate) % 1000).astype(np.int16)
    closed = _feed_blocks(sched, audio, blocksize=1024)

    assert len(closed) == 1
    assert closed[0].index == 0
    assert closed[0].duration_seconds == 300.0
    assert sched.next_index == 1
    assert sched.open_seconds == pytest.approx(60.0)

    tail = sched.flush()
    assert tail.index == 1
    joined = np.concatenate([_samples(closed[0]), _samples(tail)])
    np.testing.assert_array_equal(joined, audio)


def test_zero_disables_splitting():
    sched = ChunkScheduler(max_chunk_seconds=0, sample_rate=100)
    assert sched.feed(np.zeros(100_000, dtype=np.int16)) == []
    tail = sched.flush()
    assert tail.index == 0
    assert tail.duration_seconds == 1000.0


def test_flush_empty_returns_none():
    sched = ChunkScheduler(max_chunk_seconds=1, sample_rate=100)
    assert sched.flush() is None
    sched.feed(np.zeros(100, dtype=np.int16))
    assert sched.flush() is None


def test_stereo_frames():
    sched = ChunkScheduler(max_chunk_seconds=1, sample_rate=100, channels=2)
    closed = sched.feed(np.zeros(2 * 150, dtype=np.int16))
    assert len(closed) == 1
    assert closed[0].channels == 2
    assert closed[0].duration_seconds == 1.0
    assert sched.open_seconds == pytest.approx(0.5)


def test_indices_contiguous_over_many_blocks():
    sched = ChunkScheduler(max_chunk_seconds=0.25, sample_rate=1000)
    rng = np.random.default_rng(0)
    closed = []
    for _ in range(200):
        closed.extend(sched.feed(np.zeros(int(rng.integers(1, 200)), dtype=np.int16)))
    tail = sched.flush()
    if tail is not None:
        closed.append(tail)
    assert [c.index for c in closed] == list(range(len(closed)))


def test_negative_limit_rejected():
    with pytest.raises(ValueError):
        ChunkScheduler(max_chunk_seconds=-1)
