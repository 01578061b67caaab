"""Reorder buffer and playback queue."""

from __future__ import annotations

import itertools
import threading

import numpy as np
import pytest

from tests.fakes import marker_of
from vyvo_tts.buffers import DecodeResult, PlaybackQueue, ReorderBuffer
from vyvo_tts.utils import float_to_pcm16, pcm16_to_float


def pcm(marker: int, n: int = 4) -> bytes:
    return np.full(n, marker, dtype="<i2").tobytes()


class Recorder:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []
        self.drained = 0

    def sink(self, data: bytes) -> None:
        self.chunks.append(data)

    def on_drained(self) -> None:
        self.drained += 1

    @property
    def markers(self) -> list[int]:
        return [marker_of(c) for c in self.chunks]


def make_buffer(expected: int) -> tuple[ReorderBuffer, Recorder]:
    rec = Recorder()
    buf = ReorderBuffer(rec.sink, on_drained=rec.on_drained)
    for seq in range(expected):
        buf.expect(seq)
    return buf, rec


def assert_invariant(buf: ReorderBuffer) -> None:
    assert all(seq > buf.next_expected for seq in buf.pending)
    assert buf.next_expected not in buf.pending


def test_in_order_results_release_immediately() -> None:
    buf, rec = make_buffer(3)
    for seq in range(3):
        buf.on_result(DecodeResult(seq, pcm(seq + 1)))
        assert rec.markers == list(range(1, seq + 2))
    assert buf.next_expected == 3
    assert buf.is_drained
    assert rec.drained == 1


@pytest.mark.parametrize("order", list(itertools.permutations(range(5))))
def test_every_completion_order_releases_in_submission_order(order) -> None:
    buf, rec = make_buffer(5)
    for seq in order:
        buf.on_result(DecodeResult(seq, pcm(seq + 1)))
        assert_invariant(buf)
    assert rec.markers == [1, 2, 3, 4, 5]
    assert buf.pending == []
    assert rec.drained == 1


def test_held_results_wait_for_gap() -> None:
    buf, rec = make_buffer(3)
    buf.on_result(DecodeResult(2, pcm(3)))
    buf.on_result(DecodeResult(1, pcm(2)))
    assert rec.chunks == []
    assert buf.pending == [1, 2]
    assert buf.outstanding == 3
    buf.on_result(DecodeResult(0, pcm(1)))
    assert rec.markers == [1, 2, 3]


def test_empty_result_is_silence_not_a_stall() -> None:
    buf, rec = make_buffer(3)
    buf.on_result(DecodeResult(2, pcm(3)))
    buf.on_result(DecodeResult(1, b"", error=RuntimeError("boom")))
    buf.on_result(DecodeResult(0, pcm(1)))
    assert rec.markers == [1, 3]
    assert buf.is_drained


def test_stale_and_unknown_results_are_ignored() -> None:
    buf, rec = make_buffer(2)
    buf.on_result(DecodeResult(0, pcm(1)))
    # already released
    buf.on_result(DecodeResult(0, pcm(9)))
    # never submitted
    buf.on_result(DecodeResult(7, pcm(9)))
    buf.on_result(DecodeResult(-1, pcm(9)))
    # other session
    buf.on_result(DecodeResult(1, pcm(9), session=5))
    assert rec.markers == [1]
    assert buf.next_expected == 1
    assert buf.pending == []

    buf.on_result(DecodeResult(1, pcm(2)))
    assert rec.markers == [1, 2]


def test_duplicate_pending_result_keeps_first() -> None:
    buf, rec = make_buffer(2)
    buf.on_result(DecodeResult(1, pcm(2)))
    buf.on_result(DecodeResult(1, pcm(9)))
    buf.on_result(DecodeResult(0, pcm(1)))
    assert rec.markers == [1, 2]


def test_reset_discards_cache_and_adopts_session() -> None:
    buf, rec = make_buffer(3)
    buf.on_result(DecodeResult(1, pcm(2)))
    buf.reset(session=4)
    assert buf.pending == []
    assert buf.next_expected == 0
    assert buf.is_drained
    buf.expect(0)
    buf.on_result(DecodeResult(0, pcm(1), session=0))
    assert rec.chunks == []
    buf.on_result(DecodeResult(0, pcm(1), session=4))
    assert rec.markers == [1]


def test_not_drained_while_results_outstanding() -> None:
    buf, rec = make_buffer(2)
    buf.on_result(DecodeResult(0, pcm(1)))
    assert not buf.is_drained
    assert rec.drained == 0


def test_concurrent_writers_keep_order() -> None:
    n = 200
    buf, rec = make_buffer(n)
    order = list(range(n))
    np.random.default_rng(7).shuffle(order)
    parts = [order[i::8] for i in range(8)]
    threads = [
        threading.Thread(target=lambda seqs=seqs: [buf.on_result(DecodeResult(s, pcm(s))) for s in seqs])
        for seqs in parts
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert rec.markers == list(range(n))
    assert rec.drained == 1


def test_playback_pull_pads_with_silence() -> None:
    queue = PlaybackQueue()
    queue.append(np.array([0.5, -0.5, 0.25], dtype=np.float32))
    out = queue.pull(5)
    assert out.dtype == np.float32
    assert out.tolist() == [0.5, -0.5, 0.25, 0.0, 0.0]
    assert len(queue) == 0
    assert queue.pull(2).tolist() == [0.0, 0.0]


def test_playback_is_fifo_across_chunks() -> None:
    queue = PlaybackQueue()
    queue.append(np.arange(1, 4, dtype=np.float32))
    queue.append(np.arange(4, 7, dtype=np.float32))
    assert queue.pull(2).tolist() == [1, 2]
    assert queue.pull(3).tolist() == [3, 4, 5]
    assert len(queue) == 1
    assert queue.read(10).tolist() == [6]
    assert queue.read(10).size == 0


def test_playback_on_empty_fires_when_consumer_drains() -> None:
    calls = []
    queue = PlaybackQueue(on_empty=lambda: calls.append(len(queue)))
    queue.pull(4)
    assert calls == []
    queue.append(np.ones(3, dtype=np.float32))
    queue.pull(2)
    assert calls == []
    queue.pull(2)
    assert calls == [0]


def test_playback_negative_count_returns_nothing() -> None:
    queue = PlaybackQueue()
    queue.append(np.ones(3, dtype=np.float32))
    assert queue.pull(-4).size == 0
    assert queue.read(-1).size == 0
    assert len(queue) == 3


def test_playback_append_pcm16_normalizes() -> None:
    queue = PlaybackQueue()
    queue.append_pcm16(np.array([32767, -32767, 0], dtype="<i2").tobytes())
    assert queue.pull(3).tolist() == pytest.approx([1.0, -1.0, 0.0])


def test_pcm16_conversions() -> None:
    samples = pcm16_to_float(np.array([16384], dtype="<i2").tobytes())
    assert samples[0] == pytest.approx(16384 / 32767.0)
    assert pcm16_to_float(b"").size == 0
    assert pcm16_to_float(b"\x01\x00\x02").size == 1
    assert np.frombuffer(float_to_pcm16(np.array([2.0, -1.0])), dtype="<i2").tolist() == [32767, -32767]
