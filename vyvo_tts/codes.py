
from __future__ import annotations
from typing import List, Sequence
import numpy as np

from .constants import AUDIO_VOCAB_SIZE, FRAME_SIZE

# Frame positions feeding each SNAC level: [c0], [c1, c4], [c2, c3, c5, c6]
CHANNEL_LAYOUT = ((0,), (1, 4), (2, 3, 5, 6))


def codes_in_range(window: Sequence[int], vocab_size: int = AUDIO_VOCAB_SIZE) -> bool:
    """True when every code lies in ``[0, vocab_size]``."""
    if not window:
        return False
    arr = np.asarray(window, dtype=np.int64)
    return bool(np.all((arr >= 0) & (arr <= vocab_size)))


def pack_channels(window: Sequence[int]) -> List[np.ndarray]:
    """
    Re-pack a flat window into the three code streams the SNAC decoder expects.

    Args:
        window: flat codes, only full frames of 7 are used.

    Returns:
        Three int64 arrays of shape [1, F], [1, 2F] and [1, 4F].
    """
    frames = len(window) // FRAME_SIZE
    if frames == 0:
        raise ValueError(f"window needs at least {FRAME_SIZE} codes, got {len(window)}")
    t = np.asarray(window[: frames * FRAME_SIZE], dtype=np.int64).reshape(frames, FRAME_SIZE)
    return [t[:, list(cols)].reshape(1, -1) for cols in CHANNEL_LAYOUT]
