"""
FastAPI server for Vyvo TTS.

Runs one shared streaming session (vLLM token generation + SNAC decoding)
and exposes it as a text-to-speech endpoint that streams audio while it is
being generated.
"""
from __future__ import annotations
import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager
import asyncio

from fastapi import FastAPI, HTTPException, Response
from fastapi.responses import StreamingResponse

from vyvo_tts.constants import CHANNELS, SAMPLE_RATE
from vyvo_tts.decoder_snac import SNACDecoder
from vyvo_tts.session import VyvoTTSSession
from vyvo_tts.status import EngineError, InvalidStateError, ModelStatus
from vyvo_tts.timing import get_timing_stats, reset_timing_stats
from vyvo_tts.transports import VLLMCompletionsTransport, VLLMGenerationEngine
from vyvo_tts.utils import float_to_pcm16
from api.models import StatusResponse, StopRequest, TTSRequest


logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================

VLLM_BASE_URL = os.getenv("VLLM_BASE_URL", "http://localhost:8000/v1")
VLLM_MODEL = os.getenv("VLLM_MODEL", "Vyvo/VyvoTTS-LFM2-Neuvillette")
SNAC_MODEL = os.getenv("SNAC_MODEL", "hubertsiuzdak/snac_24khz")
TTS_DEVICE = os.getenv("TTS_DEVICE", None)  # None = auto-detect (CUDA/MPS/CPU)
DECODE_WORKERS = int(os.getenv("DECODE_WORKERS", "2"))

STREAM_CHUNK_SAMPLES = 2048  # ~85 ms at 24 kHz
STREAM_POLL_SECONDS = 0.01

# Global instance (initialized in lifespan)
session: Optional[VyvoTTSSession] = None


def create_session() -> VyvoTTSSession:
    """Build the session from the environment configuration."""
    transport = VLLMCompletionsTransport(VLLM_BASE_URL, VLLM_MODEL)
    return VyvoTTSSession(
        engine=VLLMGenerationEngine(transport),
        decoder=SNACDecoder(device=TTS_DEVICE, model_id=SNAC_MODEL),
        max_workers=DECODE_WORKERS,
    )


# ============================================================================
# Application Lifecycle
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup resources."""
    global session

    logger.info("Initializing Vyvo TTS API (vLLM %s, model %s, device %s)",
                VLLM_BASE_URL, VLLM_MODEL, TTS_DEVICE or "auto-detect")

    session = create_session()
    init = session.init_model()
    init.add_done_callback(_log_init_result)

    yield

    logger.info("Shutting down Vyvo TTS API...")
    session.close()
    session = None


def _log_init_result(future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Model initialization failed: %s", exc)
    else:
        logger.info("Models loaded, session ready")


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="Vyvo TTS API",
    description="Streaming text-to-speech with concurrent SNAC decoding",
    version="1.0.0",
    lifespan=lifespan,
)


# ============================================================================
# Helpers
# ============================================================================

def get_session() -> VyvoTTSSession:
    if session is None:
        raise HTTPException(status_code=503, detail="Session not initialized")
    return session


async def pcm_stream(tts: VyvoTTSSession) -> AsyncGenerator[bytes, None]:
    """
    Drain the playback queue as PCM16 bytes until the session leaves GENERATING.

    The client is the playback consumer: the session only returns to READY
    once everything queued has been read here. A client that goes away
    mid-stream stops generation and discards the rest.
    """
    finished = False
    try:
        while True:
            samples = tts.read(STREAM_CHUNK_SAMPLES)
            if samples.size:
                yield float_to_pcm16(samples)
                continue
            if tts.status != ModelStatus.GENERATING:
                finished = True
                break
            await asyncio.sleep(STREAM_POLL_SECONDS)
    finally:
        if not finished and tts.status == ModelStatus.GENERATING:
            logger.info("Client went away, stopping generation")
            try:
                tts.stop(discard_audio=True)
            except InvalidStateError:
                pass


async def audio_stream_converter(
    pcm_stream: AsyncGenerator[bytes, None],
    format: str,
    sample_rate: int = SAMPLE_RATE,
    channels: int = CHANNELS
) -> AsyncGenerator[bytes, None]:
    """
    Convert PCM stream to target format using ffmpeg.

    Args:
        pcm_stream: Async iterator yielding PCM bytes
        format: Target format ('mp3', 'opus', 'aac', 'wav', 'pcm')
        sample_rate: Input sample rate
        channels: Input channels

    Yields:
        Encoded audio bytes
    """
    if format == "pcm":
        async for chunk in pcm_stream:
            yield chunk
        return

    containers = {"mp3": "mp3", "opus": "opus", "aac": "adts", "wav": "wav"}
    cmd = [
        "ffmpeg",
        "-f", "s16le",       # Input format: signed 16-bit little-endian
        "-ar", str(sample_rate),
        "-ac", str(channels),
        "-i", "pipe:0",
        "-loglevel", "error",
        "-f", containers[format], "pipe:1",
    ]

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )

    async def write_stdin():
        try:
            async for chunk in pcm_stream:
                process.stdin.write(chunk)
                await process.stdin.drain()
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.error(f"Error writing to ffmpeg stdin: {e}")

    write_task = asyncio.create_task(write_stdin())

    try:
        while True:
            chunk = await process.stdout.read(4096)
            if not chunk:
                break
            yield chunk
    finally:
        if not write_task.done():
            write_task.cancel()
            try:
                await write_task
            except asyncio.CancelledError:
                pass

        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {
        "status": "healthy",
        "model": VLLM_MODEL,
        "vllm_url": VLLM_BASE_URL,
        "session": session.status.value if session is not None else None,
    }


@app.get("/v1/status", response_model=StatusResponse)
async def get_status():
    tts = get_session()
    return StatusResponse(
        status=tts.status.value,
        buffered_samples=len(tts.playback),
        windows_in_flight=tts.scheduler.in_flight,
        pending_windows=tts.reorder.pending,
    )


@app.post("/v1/text-to-speech")
async def text_to_speech(request: TTSRequest):
    """
    Convert text to speech with streaming or non-streaming response.

    Returns:
        Audio bytes in requested format (streaming or complete)
    """
    tts = get_session()

    try:
        tts.prompt(request.text, request.sampling_params(), speaker=request.speaker)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except EngineError as e:
        raise HTTPException(status_code=503, detail=str(e))

    format_media_types = {
        "mp3": "audio/mpeg",
        "opus": "audio/ogg",
        "aac": "audio/aac",
        "wav": "audio/wav",
        "pcm": "audio/pcm",
    }
    media_type = format_media_types[request.response_format]
    headers = {
        "X-Sample-Rate": str(SAMPLE_RATE),
        "X-Channels": str(CHANNELS),
    }

    audio_stream = audio_stream_converter(pcm_stream(tts), format=request.response_format)

    if request.stream:
        return StreamingResponse(audio_stream, media_type=media_type, headers=headers)

    # Non-streaming: collect all audio chunks
    audio_chunks = [chunk async for chunk in audio_stream]
    if tts.status == ModelStatus.ERROR:
        raise HTTPException(status_code=500, detail="Error generating audio")

    return Response(content=b"".join(audio_chunks), media_type=media_type, headers=headers)


@app.post("/v1/stop")
async def stop(request: Optional[StopRequest] = None):
    """Stop the running generation; queued audio keeps streaming unless discarded."""
    tts = get_session()
    discard = request.discard_audio if request is not None else False
    try:
        tts.stop(discard_audio=discard)
    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": tts.status.value}


# ============================================================================
# Debug Endpoints
# ============================================================================

@app.get("/debug/timing")
async def get_timing():
    """
    Get timing statistics for all tracked functions.

    Returns call counts, average, min and max times per tracked function.
    """
    formatted_stats = {}
    for func_name, data in get_timing_stats().items():
        if data["count"] == 0:
            continue
        formatted_stats[func_name] = {
            "calls": data["count"],
            "total_ms": round(data["total_time"] * 1000, 2),
            "avg_ms": round(data["total_time"] / data["count"] * 1000, 2),
            "min_ms": round(data["min_time"] * 1000, 2),
            "max_ms": round(data["max_time"] * 1000, 2),
        }

    return {
        "timing_stats": formatted_stats,
        "note": "All times in milliseconds"
    }


@app.post("/debug/timing/reset")
async def reset_timing():
    """Reset all timing statistics."""
    reset_timing_stats()
    return {"status": "success", "message": "Timing statistics have been reset"}


# ============================================================================
# Main Entry Point (for local development only)
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    port = int(os.getenv("API_PORT", "8080"))
    host = os.getenv("API_HOST", "0.0.0.0")

    logger.info("Starting Vyvo TTS API on %s:%d", host, port)

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
