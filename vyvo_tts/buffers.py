
from __future__ import annotations
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional
import logging
import threading
import numpy as np

from .utils import pcm16_to_float

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DecodeResult:
    """PCM16 bytes decoded for one sequenced window; empty bytes mean silence."""
    sequence: int
    pcm: bytes = b""
    session: int = 0
    error: Optional[BaseException] = None

    @property
    def is_empty(self) -> bool:
        return not self.pcm


class ReorderBuffer:
    """
    Releases decode results in submission order.

    Workers may finish in any order; results wait in a cache keyed by sequence
    number until every lower sequence number has been released. Insert and
    release happen under one lock, so ``on_result`` is safe from any thread
    and the sink sees chunks strictly in order.

    Args:
        sink: receives the PCM16 bytes of each released non-empty result.
        on_drained: called after a release burst leaves nothing outstanding.
    """
    def __init__(self,
                 sink: Callable[[bytes], None],
                 on_drained: Optional[Callable[[], None]] = None):
        self._sink = sink
        self._on_drained = on_drained
        self._lock = threading.Lock()
        self._cache: Dict[int, DecodeResult] = {}
        self._next_expected = 0
        self._expected_count = 0
        self._session = 0

    @property
    def session(self) -> int:
        return self._session

    @property
    def next_expected(self) -> int:
        with self._lock:
            return self._next_expected

    @property
    def pending(self) -> List[int]:
        """Sequence numbers received but held back, ascending."""
        with self._lock:
            return sorted(self._cache)

    @property
    def outstanding(self) -> int:
        """Registered sequence numbers not released yet."""
        with self._lock:
            return self._expected_count - self._next_expected

    @property
    def is_drained(self) -> bool:
        with self._lock:
            return not self._cache and self._next_expected >= self._expected_count

    def reset(self, session: int) -> None:
        """Discard everything and start accepting results for ``session``."""
        with self._lock:
            if self._cache:
                logger.debug("Discarding %d cached results of session %d", len(self._cache), self._session)
            self._cache.clear()
            self._next_expected = 0
            self._expected_count = 0
            self._session = session

    def expect(self, sequence: int) -> None:
        """Register a submitted sequence number."""
        with self._lock:
            self._expected_count = max(self._expected_count, sequence + 1)

    def on_result(self, result: DecodeResult) -> None:
        drained = False
        with self._lock:
            if not self._accepts(result):
                logger.debug("Dropping stale result %d (session %d)", result.sequence, result.session)
                return

            self._cache[result.sequence] = result

            while self._next_expected in self._cache:
                ready = self._cache.pop(self._next_expected)
                if not ready.is_empty:
                    self._sink(ready.pcm)
                self._next_expected += 1

            drained = not self._cache and self._next_expected >= self._expected_count

        if drained and self._on_drained is not None:
            self._on_drained()

    def _accepts(self, result: DecodeResult) -> bool:
        return (
            result.session == self._session
            and self._next_expected <= result.sequence < self._expected_count
            and result.sequence not in self._cache
        )


class PlaybackQueue:
    """
    Sample FIFO between the reorder buffer and the audio consumer.

    ``pull`` never blocks and pads with silence on underrun, as a real-time
    audio callback requires. ``on_empty`` fires whenever a consumer drains the
    queue to zero samples.
    """
    def __init__(self, on_empty: Optional[Callable[[], None]] = None):
        self._chunks: Deque[np.ndarray] = deque()
        self._head = 0  # read offset into _chunks[0]
        self._size = 0
        self._lock = threading.Lock()
        self.on_empty = on_empty

    def __len__(self) -> int:
        with self._lock:
            return self._size

    @property
    def empty(self) -> bool:
        return len(self) == 0

    def append(self, samples: np.ndarray) -> None:
        arr = np.asarray(samples, dtype=np.float32).reshape(-1)
        if arr.size == 0:
            return
        with self._lock:
            self._chunks.append(arr)
            self._size += arr.size

    def append_pcm16(self, data: bytes) -> None:
        self.append(pcm16_to_float(data))

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._head = 0
            self._size = 0

    def pull(self, count: int) -> np.ndarray:
        """Return exactly ``count`` samples, zero padded when the queue runs dry."""
        out = np.zeros(max(count, 0), dtype=np.float32)
        got = self._take(out)
        if got < out.size:
            logger.debug("Playback underrun: %d of %d samples", got, out.size)
        return out

    def read(self, max_count: int) -> np.ndarray:
        """Return up to ``max_count`` buffered samples without padding."""
        out = np.zeros(max(max_count, 0), dtype=np.float32)
        got = self._take(out)
        return out[:got]

    def _take(self, out: np.ndarray) -> int:
        filled = 0
        drained = False
        with self._lock:
            had_samples = self._size > 0
            while filled < out.size and self._chunks:
                chunk = self._chunks[0]
                n = min(out.size - filled, chunk.size - self._head)
                out[filled:filled + n] = chunk[self._head:self._head + n]
                filled += n
                self._head += n
                if self._head >= chunk.size:
                    self._chunks.popleft()
                    self._head = 0
            self._size -= filled
            drained = had_samples and self._size == 0

        if drained and self.on_empty is not None:
            self.on_empty()
        return filled
