
from __future__ import annotations
from collections import deque
from typing import Deque, List, Optional, Tuple
import re

from .constants import (
    AUDIO_VOCAB_SIZE,
    CUSTOM_TOKEN_OFFSET,
    CUSTOM_TOKEN_PREFIX,
    FRAME_SIZE,
    WINDOW_SIZE,
)

Window = Tuple[int, ...]

_CUSTOM_TOKEN_RE = re.compile(re.escape(CUSTOM_TOKEN_PREFIX) + r"(\d+)>")


def extract_custom_token_numbers(text: str) -> List[int]:
    """Return every ``<custom_token_N>`` number found in ``text``, in order."""
    return [int(m) for m in _CUSTOM_TOKEN_RE.findall(text)]


def parse_token(text: str) -> Optional[int]:
    """Parse the last custom token of a streamed text fragment.

    The generation engine may hand over fragments with surrounding whitespace
    or leading text; only the trailing ``<custom_token_N>`` counts. Returns
    ``None`` when the fragment holds no well formed custom token.
    """
    text = text.strip()
    start = text.rfind(CUSTOM_TOKEN_PREFIX)
    if start == -1:
        return None
    last = text[start:]
    if not last.endswith(">"):
        return None
    digits = last[len(CUSTOM_TOKEN_PREFIX):-1]
    if not digits.isdigit():
        return None
    return int(digits)


class VyvoMapper:
    """
    Turns the raw custom token stream into overlapping SNAC decode windows.

    The model interleaves the 7 codes of a frame into one token stream, each
    frame position shifted by ``position * vocab_size``. The mapper removes
    that shift, keeps the last ``window_size`` codes and emits a window every
    ``stride`` accepted codes once a full window is available.

    Args:
        window_size: codes per decode window (28 = 4 frames).
        stride: new codes between two windows (7 = one frame).
        vocab_size: size of the code alphabet of one frame position.
        offset: custom token number of code 0.
    """
    def __init__(self,
                 window_size: int = WINDOW_SIZE,
                 stride: int = FRAME_SIZE,
                 vocab_size: int = AUDIO_VOCAB_SIZE,
                 offset: int = CUSTOM_TOKEN_OFFSET):
        if stride <= 0 or window_size < stride:
            raise ValueError("window_size must be >= stride > 0")
        self.window_size = window_size
        self.stride      = stride
        self.vocab_size  = vocab_size
        self.offset      = offset
        self._codes: Deque[int] = deque(maxlen=window_size)
        self._count = 0

    @property
    def count(self) -> int:
        """Number of codes accepted since the last reset."""
        return self._count

    @property
    def buffered(self) -> int:
        return len(self._codes)

    def reset(self) -> None:
        self._codes.clear()
        self._count = 0

    def to_code(self, number: int) -> Optional[int]:
        code = number - self.offset - (self._count % self.stride) * self.vocab_size
        return code if code >= 0 else None

    def feed(self, token_text: str) -> Optional[Window]:
        """Feed one streamed token fragment; returns a window when one is due."""
        number = parse_token(token_text)
        if number is None:
            return None
        return self.feed_raw(number)

    def feed_raw(self, number: int) -> Optional[Window]:
        """Feed one custom token number; returns a window when one is due."""
        code = self.to_code(number)
        if code is None:
            return None

        self._codes.append(code)
        self._count += 1

        if self._count % self.stride == 0 and self._count >= self.window_size:
            return tuple(self._codes)
        return None
