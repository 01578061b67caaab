
from __future__ import annotations
from typing import Iterable, Optional, Protocol, Sequence
import concurrent.futures
import logging
import threading
import numpy as np

from .buffers import PlaybackQueue, ReorderBuffer
from .mapper import VyvoMapper
from .scheduler import DecodeScheduler
from .status import (
    EngineError,
    InvalidStateError,
    ModelStatus,
    StatusBroadcaster,
    StatusCallback,
    merge_status,
)
from .transports import SamplingParams
from .utils import vyvo_prompt

logger = logging.getLogger(__name__)


class GenerationEngine(Protocol):
    def load(self) -> None: ...
    def start(self, prompt, params, on_token, on_done, on_error) -> None: ...
    def stop(self) -> None: ...
    def close(self) -> None: ...


class DecodeEngine(Protocol):
    def load(self) -> None: ...
    def unload(self) -> None: ...
    def decode_channels(self, channels: Sequence[np.ndarray]) -> bytes: ...


class VyvoTTSSession:
    """
    One text-to-speech session: generation -> mapper -> decode pool ->
    reorder buffer -> playback queue.

    The status is derived from the generation engine and the decode pipeline
    and is never set by callers. After ``prompt`` the session is back to
    READY only once generation finished, every submitted window has been
    released in order, and the consumer has pulled the playback queue empty.

    Status callbacks run on whichever thread caused the change (caller,
    loader, generation or decode worker, or the audio consumer).

    Args:
        engine: generation engine producing custom token text.
        decoder: SNAC decoder shared by the decode workers.
        max_workers: concurrent decodes.
        speaker: optional speaker prefix for the prompt.
    """
    def __init__(self,
                 engine: GenerationEngine,
                 decoder: DecodeEngine,
                 max_workers: int = 2,
                 speaker: Optional[str] = None):
        self.engine    = engine
        self.decoder   = decoder
        self.speaker   = speaker
        self.mapper    = VyvoMapper()
        self.playback  = PlaybackQueue(on_empty=self._check_done)
        self.reorder   = ReorderBuffer(self.playback.append_pcm16, on_drained=self._check_done)
        self.scheduler = DecodeScheduler(decoder, self.reorder, max_workers=max_workers)

        self._events = StatusBroadcaster()
        self._cond = threading.Condition(threading.RLock())
        self._status = ModelStatus.INIT
        self._generation = ModelStatus.INIT
        self._decode = ModelStatus.INIT
        self._generation_id = 0
        self._generation_done = False
        self._discarding = False
        self._closed = False

    # ------------ status ------------
    @property
    def status(self) -> ModelStatus:
        return self._status

    def subscribe(self, callback: StatusCallback) -> None:
        self._events.subscribe(callback)

    def unsubscribe(self, callback: StatusCallback) -> None:
        self._events.unsubscribe(callback)

    def wait_for(self, statuses: Iterable[ModelStatus] | ModelStatus,
                 timeout: Optional[float] = None) -> bool:
        """Block until the status is one of ``statuses``; False on timeout."""
        wanted = {statuses} if isinstance(statuses, ModelStatus) else set(statuses)
        with self._cond:
            return self._cond.wait_for(lambda: self._status in wanted, timeout)

    def _set(self,
             generation: Optional[ModelStatus] = None,
             decode: Optional[ModelStatus] = None,
             force: bool = False) -> None:
        with self._cond:
            if self._status == ModelStatus.ERROR and not force:
                return
            if generation is not None:
                self._generation = generation
            if decode is not None:
                self._decode = decode
            status = merge_status(self._generation, self._decode)
            if status == self._status:
                return
            logger.info("Status %s -> %s", self._status.value, status.value)
            self._status = status
            self._cond.notify_all()
            self._events.publish(status)

    # ------------ init ------------
    def init_model(self) -> concurrent.futures.Future:
        """
        Load the generation engine and the decoder concurrently.

        Returns a future resolving to READY, or raising ``EngineError`` after
        the session moved to ERROR.
        """
        with self._cond:
            if self._status != ModelStatus.INIT:
                raise InvalidStateError(f"init_model not allowed in status {self._status.value}")
            self._set(ModelStatus.LOADING, ModelStatus.LOADING)

        pool = concurrent.futures.ThreadPoolExecutor(max_workers=3, thread_name_prefix="vyvo-init")
        gen = pool.submit(self._load, "generation", self.engine.load)
        dec = pool.submit(self._load, "decode", self.decoder.load)
        done = pool.submit(self._finish_init, gen, dec)
        pool.shutdown(wait=False)
        return done

    def _load(self, name: str, loader) -> None:
        logger.info("Loading %s engine", name)
        loader()
        logger.info("%s engine ready", name.capitalize())
        if name == "generation":
            self._set(generation=ModelStatus.READY)
        else:
            self._set(decode=ModelStatus.READY)

    def _finish_init(self, *futures: concurrent.futures.Future) -> ModelStatus:
        concurrent.futures.wait(futures)
        for f in futures:
            exc = f.exception()
            if exc is not None:
                self._fail(exc)
                raise EngineError(f"model initialization failed: {exc}") from exc
        return self._status

    # ------------ generation ------------
    def prompt(self,
               text: str,
               params: Optional[SamplingParams] = None,
               speaker: Optional[str] = None) -> None:
        """Start synthesizing ``text``; audio becomes available through ``pull``."""
        if not text or not text.strip():
            raise ValueError("prompt text must not be empty")

        with self._cond:
            if self._status != ModelStatus.READY:
                raise InvalidStateError(f"prompt not allowed in status {self._status.value}")

            self.mapper.reset()
            self.scheduler.reset()
            self.playback.clear()
            self._generation_id += 1
            self._generation_done = False
            self._discarding = False
            gen_id = self._generation_id
            self._set(ModelStatus.GENERATING, ModelStatus.GENERATING)

            try:
                self.engine.start(
                    vyvo_prompt(text, speaker or self.speaker),
                    params,
                    lambda token_text: self._on_token(gen_id, token_text),
                    lambda stopped: self._on_generation_done(gen_id, stopped),
                    lambda exc: self._on_generation_error(gen_id, exc),
                )
            except Exception as e:
                self._fail(e)
                raise EngineError(f"generation failed to start: {e}") from e

    def _on_token(self, gen_id: int, token_text: str) -> None:
        try:
            with self._cond:
                # tokens already in flight when the generation was stopped with discard
                if gen_id != self._generation_id or self._discarding:
                    return
                window = self.mapper.feed(token_text)
                if window is not None:
                    self.scheduler.submit(window)
        except Exception as e:
            logger.exception("Decode dispatch failed")
            self.engine.stop()
            self._fail(e)

    def _on_generation_done(self, gen_id: int, stopped: bool) -> None:
        with self._cond:
            if gen_id != self._generation_id:
                return
            logger.info("Generation %s after %d codes, %d windows",
                        "stopped" if stopped else "complete",
                        self.mapper.count, self.scheduler.submitted)
            self._generation_done = True
            self._check_done()

    def _on_generation_error(self, gen_id: int, exc: BaseException) -> None:
        with self._cond:
            if gen_id != self._generation_id:
                return
        self._fail(exc)

    def _check_done(self) -> None:
        with self._cond:
            if self._status != ModelStatus.GENERATING or not self._generation_done:
                return
            if not self.reorder.is_drained or not self.playback.empty:
                return
            self._set(ModelStatus.READY, ModelStatus.READY)

    def stop(self, discard_audio: bool = False) -> None:
        """
        Stop generation. Queued audio still plays out unless ``discard_audio``
        is set, in which case in-flight decodes are abandoned and the playback
        queue is cleared. Never waits for workers.
        """
        with self._cond:
            if self._status != ModelStatus.GENERATING:
                raise InvalidStateError(f"stop not allowed in status {self._status.value}")
            self.engine.stop()
            if discard_audio:
                self._discarding = True
                self.mapper.reset()
                self.scheduler.cancel()
                self.playback.clear()
            self._check_done()

    # ------------ playback ------------
    def pull(self, count: int) -> np.ndarray:
        """Audio callback entry point: ``count`` float samples, silence on underrun."""
        return self.playback.pull(count)

    def read(self, max_count: int) -> np.ndarray:
        """Up to ``max_count`` buffered samples, no padding."""
        return self.playback.read(max_count)

    # ------------ failure / teardown ------------
    def _fail(self, exc: BaseException) -> None:
        with self._cond:
            if self._status == ModelStatus.ERROR:
                return
            logger.error("Session failed: %s", exc)
            self._generation_id += 1
            self._set(ModelStatus.ERROR, ModelStatus.ERROR, force=True)
        self._release()

    def _release(self) -> None:
        self.engine.stop()
        self.scheduler.cancel()
        self.playback.clear()
        self.decoder.unload()

    def reset(self) -> None:
        """Leave ERROR: release everything and go back to INIT."""
        with self._cond:
            if self._status != ModelStatus.ERROR:
                raise InvalidStateError(f"reset not allowed in status {self._status.value}")
        self._release()
        self._set(ModelStatus.INIT, ModelStatus.INIT, force=True)

    def close(self) -> None:
        """Tear down: stop generation, wait for decode workers, free the decoder."""
        if self._closed:
            return
        self._closed = True
        with self._cond:
            self._generation_id += 1
        self.engine.stop()
        self.engine.close()
        self.scheduler.shutdown(wait=True)
        self.decoder.unload()
        logger.info("Session closed")

    def __enter__(self) -> "VyvoTTSSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
