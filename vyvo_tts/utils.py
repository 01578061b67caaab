
from __future__ import annotations
from typing import Optional
import numpy as np

from .constants import (
    BEGIN_OF_TEXT_STR,
    END_OF_HUMAN_STR,
    END_OF_TEXT_STR,
    PCM16_SCALE,
    START_OF_HUMAN_STR,
)


def vyvo_prompt(text: str, speaker: Optional[str] = None) -> str:
    """Format the prompt for the Vyvo TTS model.

    Args:
        text: The text to synthesize.
        speaker: Optional speaker name for multi-speaker checkpoints.
    """
    body = f"{speaker}: {text}" if speaker else text
    return START_OF_HUMAN_STR + BEGIN_OF_TEXT_STR + body + END_OF_TEXT_STR + END_OF_HUMAN_STR


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Convert little-endian PCM16 bytes to float32 samples in [-1, 1]."""
    if not data:
        return np.zeros(0, dtype=np.float32)
    if len(data) % 2:
        data = data[:-1]
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / PCM16_SCALE


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Convert float samples to little-endian PCM16 bytes, clipping to [-1, 1]."""
    x = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (x * PCM16_SCALE).astype("<i2").tobytes()
