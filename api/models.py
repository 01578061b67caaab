"""
Pydantic models for API request/response schemas.

Contains all data models used by the Vyvo TTS API endpoints.
"""
from __future__ import annotations
from typing import Literal, Optional
from pydantic import BaseModel, Field

from vyvo_tts.transports import SamplingParams


class StatusResponse(BaseModel):
    """Response for GET /v1/status."""
    status: str
    buffered_samples: int = Field(..., description="Samples waiting in the playback queue")
    windows_in_flight: int = Field(..., description="Decode windows not finished yet")
    pending_windows: list[int] = Field(default_factory=list, description="Decoded windows held back for ordering")


class TTSRequest(BaseModel):
    """Request model for the text-to-speech endpoint."""
    text: str = Field(..., min_length=1, max_length=5000, description="Text to synthesize")
    speaker: Optional[str] = Field(None, description="Speaker prefix for multi-speaker checkpoints")
    stream: bool = Field(default=True, description="Stream audio response")
    response_format: Literal["pcm", "wav", "mp3", "opus", "aac"] = Field(default="pcm", description="Output audio format")

    # Generation parameters (optional)
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0, description="Sampling temperature (default: 0.6)")
    top_p: Optional[float] = Field(None, ge=0.0, le=1.0, description="Nucleus sampling probability (default: 0.9)")
    top_k: Optional[int] = Field(None, ge=-1, description="Top-k sampling (default: 40)")
    min_p: Optional[float] = Field(None, ge=0.0, le=1.0, description="Min-p sampling (default: 0.05)")
    repetition_penalty: Optional[float] = Field(None, ge=1.0, le=2.0, description="Repetition penalty (default: 1.1)")
    max_tokens: Optional[int] = Field(None, ge=1, le=8192, description="Maximum tokens to generate (default: 2048)")

    def sampling_params(self) -> SamplingParams:
        params = SamplingParams()
        for name in ("temperature", "top_p", "top_k", "min_p", "max_tokens"):
            value = getattr(self, name)
            if value is not None:
                setattr(params, name, value)
        if self.repetition_penalty is not None:
            params.repeat_penalty = self.repetition_penalty
        return params


class StopRequest(BaseModel):
    """Request model for POST /v1/stop."""
    discard_audio: bool = Field(default=False, description="Drop queued and in-flight audio instead of letting it play out")
