"""Concurrent decode dispatch with in-order delivery."""

from __future__ import annotations

import itertools
import threading

import pytest

from tests.fakes import FakeDecoder, marked_window, marker_of, wait_until
from vyvo_tts.buffers import ReorderBuffer
from vyvo_tts.constants import HOP_SAMPLES
from vyvo_tts.scheduler import DecodeScheduler


class Pipeline:
    def __init__(self, decoder: FakeDecoder, max_workers: int = 4) -> None:
        self.chunks: list[bytes] = []
        self.drained = threading.Event()
        self.reorder = ReorderBuffer(self.chunks.append, on_drained=self.drained.set)
        self.scheduler = DecodeScheduler(decoder, self.reorder, max_workers=max_workers)

    @property
    def markers(self) -> list[int]:
        return [marker_of(c) for c in self.chunks]

    def close(self) -> None:
        self.scheduler.shutdown(wait=True)


def test_sequence_numbers_start_at_zero_and_increase(decoder: FakeDecoder) -> None:
    p = Pipeline(decoder)
    try:
        assert [p.scheduler.submit(marked_window(m)) for m in (1, 2, 3)] == [0, 1, 2]
        assert wait_until(lambda: p.reorder.next_expected == 3)
        assert p.markers == [1, 2, 3]
        assert all(len(c) == HOP_SAMPLES * 2 for c in p.chunks)
    finally:
        p.close()


@pytest.mark.parametrize("release_order", list(itertools.permutations([1, 2, 3, 4])))
def test_completion_order_does_not_change_playback_order(release_order) -> None:
    decoder = FakeDecoder()
    gates = {m: decoder.gate(m) for m in (1, 2, 3, 4)}
    p = Pipeline(decoder, max_workers=4)
    try:
        for m in (1, 2, 3, 4):
            p.scheduler.submit(marked_window(m))
        assert wait_until(lambda: len(decoder.calls) == 4)
        for m in release_order:
            gates[m].set()
        assert wait_until(lambda: p.reorder.next_expected == 4)
        assert p.drained.wait(5.0)
        assert p.markers == [1, 2, 3, 4]
    finally:
        p.close()


def test_failed_window_becomes_silence_between_neighbours() -> None:
    decoder = FakeDecoder(fail_markers=[2])
    p = Pipeline(decoder)
    try:
        for m in (1, 2, 3):
            p.scheduler.submit(marked_window(m))
        assert wait_until(lambda: p.reorder.next_expected == 3)
        assert p.markers == [1, 3]
        assert p.reorder.is_drained
    finally:
        p.close()


def test_out_of_range_window_never_reaches_decoder(decoder: FakeDecoder) -> None:
    p = Pipeline(decoder)
    try:
        bad = (5000,) + (1,) * 27
        p.scheduler.submit(marked_window(1))
        p.scheduler.submit(bad)
        p.scheduler.submit((7,) + (-1,) + (1,) * 26)
        p.scheduler.submit(marked_window(4))
        assert wait_until(lambda: p.reorder.next_expected == 4)
        assert p.markers == [1, 4]
        assert sorted(decoder.calls) == [1, 4]
    finally:
        p.close()


def test_decode_returns_tagged_empty_result_on_failure() -> None:
    decoder = FakeDecoder(fail_markers=[9])
    p = Pipeline(decoder)
    try:
        result = p.scheduler.decode(marked_window(9), seq=3, session=p.scheduler.session)
        assert result.sequence == 3
        assert result.is_empty
        assert isinstance(result.error, RuntimeError)
    finally:
        p.close()


def test_reset_abandons_in_flight_results(decoder: FakeDecoder) -> None:
    gate = decoder.gate(1)
    p = Pipeline(decoder, max_workers=1)
    try:
        p.scheduler.submit(marked_window(1))
        p.scheduler.submit(marked_window(2))
        assert wait_until(lambda: decoder.calls == [1])
        old_session = p.scheduler.session

        new_session = p.scheduler.reset()
        assert new_session == old_session + 1
        assert p.scheduler.in_flight == 0
        assert p.reorder.is_drained

        gate.set()
        assert p.scheduler.submit(marked_window(3)) == 0
        assert wait_until(lambda: p.markers == [3])
        # window 2 was queued behind the blocked worker and got cancelled
        assert 2 not in decoder.calls
        assert p.markers == [3]
    finally:
        p.close()


def test_in_flight_tracks_unfinished_work(decoder: FakeDecoder) -> None:
    gate = decoder.gate(1)
    p = Pipeline(decoder, max_workers=2)
    try:
        p.scheduler.submit(marked_window(1))
        p.scheduler.submit(marked_window(2))
        assert wait_until(lambda: p.scheduler.in_flight == 1)
        gate.set()
        assert wait_until(lambda: p.scheduler.in_flight == 0)
        assert p.scheduler.submitted == 2
    finally:
        p.close()


def test_shutdown_waits_for_workers(decoder: FakeDecoder) -> None:
    gate = decoder.gate(1)
    p = Pipeline(decoder)
    p.scheduler.submit(marked_window(1))
    assert wait_until(lambda: decoder.calls == [1])
    threading.Timer(0.05, gate.set).start()
    p.scheduler.shutdown(wait=True)
    assert p.markers == [1]


def test_max_workers_must_be_positive(decoder: FakeDecoder) -> None:
    with pytest.raises(ValueError):
        DecodeScheduler(decoder, ReorderBuffer(lambda _: None), max_workers=0)
