# vyvo_tts/decoder_snac.py
from __future__ import annotations
from typing import List, Optional, Sequence
import logging
import threading
import numpy as np
import torch
from snac import SNAC

from .codes import pack_channels
from .constants import PCM16_SCALE, SAMPLE_RATE, SLICE_END, SLICE_START, WINDOW_SIZE
from .timing import track_time

logger = logging.getLogger(__name__)


class SNACDecoder:
    """
    Decodes Vyvo 7-code frames to PCM16 using SNAC (24 kHz). Accepts the three
    channel layouts of a 28-code window and returns the synthesis region of
    the decoded audio, one hop of 2048 samples per window.

    The model handle is shared read-only across decode workers.
    """
    def __init__(self, device: Optional[str] = None, model_id: str = "hubertsiuzdak/snac_24khz"):
        if device is None:
            if torch.cuda.is_available():
                device = "cuda"
            elif torch.backends.mps.is_available():
                device = "mps"
            else:
                device = "cpu"
        self.device      = device
        self.model_id    = model_id
        self.model: Optional[SNAC] = None
        self.sample_rate = SAMPLE_RATE
        self._lock       = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self.model is not None

    def load(self) -> None:
        """Load the SNAC weights and run one warm-up decode."""
        with self._lock:
            if self.model is not None:
                return
            logger.info("Loading SNAC model %s on %s", self.model_id, self.device)
            self.model = SNAC.from_pretrained(self.model_id).eval().to(self.device)

        logger.info("Warmup SNAC model...")
        self.decode_window([0] * WINDOW_SIZE)
        logger.info("SNAC warmup done")

    def unload(self) -> None:
        with self._lock:
            self.model = None
        if self.device == "cuda":
            torch.cuda.empty_cache()

    @track_time("SNAC.decode_channels")
    def decode_channels(self, channels: Sequence[np.ndarray]) -> bytes:
        """
        Decode the three SNAC code streams into PCM16 bytes.

        Args:
            channels: int arrays shaped [1, F], [1, 2F], [1, 4F].

        Returns:
            PCM16 little-endian mono bytes of the [2048:4096] region.
        """
        model = self.model
        if model is None:
            raise RuntimeError("SNAC model not loaded")

        codes: List[torch.Tensor] = [
            torch.as_tensor(np.asarray(c), dtype=torch.int32, device=self.device)
            for c in channels
        ]

        with torch.inference_mode():
            audio = model.decode(codes)  # [1, 1, T]
            if audio.dim() != 3 or audio.shape[2] < SLICE_END:
                raise ValueError(f"unexpected audio_hat shape {tuple(audio.shape)}")
            audio = audio[:, :, SLICE_START:SLICE_END]

        x = audio.detach().float().cpu().numpy().reshape(-1)
        pcm16 = (np.clip(x, -1.0, 1.0) * PCM16_SCALE).astype("<i2")
        return pcm16.tobytes()

    def decode_window(self, window: Sequence[int]) -> bytes:
        """Decode a flat window of codes; see :func:`pack_channels`."""
        return self.decode_channels(pack_channels(window))
