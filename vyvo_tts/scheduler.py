
from __future__ import annotations
from typing import Dict, Optional, Protocol, Sequence
import concurrent.futures
import logging
import threading
import numpy as np

from .buffers import DecodeResult, ReorderBuffer
from .codes import codes_in_range, pack_channels
from .constants import AUDIO_VOCAB_SIZE
from .mapper import Window
from .timing import track_time

logger = logging.getLogger(__name__)


class ChannelDecoder(Protocol):
    def decode_channels(self, channels: Sequence[np.ndarray]) -> bytes: ...


class DecodeScheduler:
    """
    Sequences decode windows and runs them on a bounded worker pool.

    Each submitted window gets the next sequence number of the current
    session. Workers hand their result to the reorder buffer, which restores
    submission order. Results are tagged with the session id they were
    submitted under, so work abandoned by ``reset``/``cancel`` is dropped on
    arrival instead of being awaited.

    Args:
        decoder: object exposing ``decode_channels``; shared by all workers.
        reorder: receives every result, from the worker thread.
        max_workers: cap on concurrently running decodes.
        vocab_size: upper bound of a valid code.
    """
    def __init__(self,
                 decoder: ChannelDecoder,
                 reorder: ReorderBuffer,
                 max_workers: int = 2,
                 vocab_size: int = AUDIO_VOCAB_SIZE):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.decoder     = decoder
        self.reorder     = reorder
        self.max_workers = max_workers
        self.vocab_size  = vocab_size
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
        self._lock       = threading.Lock()
        self._next_seq   = 0
        self._session    = reorder.session
        self._in_flight: Dict[int, concurrent.futures.Future] = {}

    @property
    def session(self) -> int:
        return self._session

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def submitted(self) -> int:
        """Windows submitted in the current session."""
        return self._next_seq

    def _pool(self) -> concurrent.futures.ThreadPoolExecutor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="snac-decode"
            )
        return self._executor

    def submit(self, window: Window) -> int:
        """Queue ``window`` for decoding; returns its sequence number."""
        with self._lock:
            seq = self._next_seq
            self._next_seq += 1
            session = self._session
            self.reorder.expect(seq)
            future = self._pool().submit(self._run, tuple(window), seq, session)
            self._in_flight[seq] = future
        future.add_done_callback(lambda _f, s=seq, sess=session: self._forget(s, sess))
        return seq

    def _forget(self, seq: int, session: int) -> None:
        with self._lock:
            if session == self._session:
                self._in_flight.pop(seq, None)

    def _run(self, window: Window, seq: int, session: int) -> None:
        try:
            result = self.decode(window, seq, session)
        except Exception as e:
            # Never leave a hole in the sequence: a lost result would stall the stream.
            logger.exception("Decode dispatch failed for window %d", seq)
            result = DecodeResult(seq, b"", session, e)
        self.reorder.on_result(result)

    @track_time("DecodeScheduler.decode")
    def decode(self, window: Window, seq: int, session: int) -> DecodeResult:
        """Decode one window; any failure becomes an empty (silent) result."""
        if not codes_in_range(window, self.vocab_size):
            logger.warning("Window %d has codes out of range, emitting silence", seq)
            return DecodeResult(seq, b"", session)
        try:
            pcm = self.decoder.decode_channels(pack_channels(window))
        except Exception as e:
            logger.error("Decode failed for window %d: %s", seq, e)
            return DecodeResult(seq, b"", session, e)
        return DecodeResult(seq, pcm or b"", session)

    def reset(self, session: Optional[int] = None) -> int:
        """Start a new session: sequence numbers restart at 0, old work is abandoned."""
        with self._lock:
            abandoned = list(self._in_flight.values())
            self._in_flight.clear()
            self._session = self._session + 1 if session is None else session
            self._next_seq = 0
            self.reorder.reset(self._session)
            new_session = self._session
        for future in abandoned:
            future.cancel()
        return new_session

    def cancel(self) -> None:
        """Abandon in-flight work without waiting for it."""
        self.reset()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool; with ``wait`` outstanding workers finish first."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
