"""
Generation engine: streams custom tokens from a vLLM OpenAI-compatible server.
"""
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional
import json
import logging
import threading
import httpx

from .constants import END_OF_SPEECH_STR
from .status import EngineError

logger = logging.getLogger(__name__)


@dataclass
class SamplingParams:
    temperature: float = 0.6
    top_k: int = 40
    top_p: float = 0.9
    min_p: float = 0.05
    repeat_penalty: float = 1.1
    max_tokens: int = 2048
    # generation ends on the end-of-speech token
    stop: List[str] = field(default_factory=lambda: [END_OF_SPEECH_STR])

    def to_payload(self) -> Dict[str, Any]:
        data = asdict(self)
        # vLLM names it repetition_penalty
        data["repetition_penalty"] = data.pop("repeat_penalty")
        return data


class VLLMCompletionsTransport:
    """
    Streaming client for ``/v1/completions``.

    Yields one text fragment per custom token: vLLM may batch several tokens
    into one SSE event, so the text is split after every ``>``.
    """
    def __init__(self,
                 base_url: str,
                 model: str,
                 headers: Optional[dict] = None,
                 timeout: float = 120.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.url      = f"{self.base_url}/completions"
        self.model    = model
        self.headers  = headers or {}
        self._client  = client or httpx.Client(timeout=timeout)

    def check(self) -> None:
        """Fail with ``EngineError`` unless the server is reachable and serves ``model``."""
        try:
            resp = self._client.get(f"{self.base_url}/models", headers=self.headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise EngineError(f"vLLM server not reachable at {self.base_url}: {e}") from e
        served = [m.get("id") for m in resp.json().get("data", [])]
        if served and self.model not in served:
            raise EngineError(f"model {self.model!r} not served (available: {served})")

    def stream(self, prompt: str, params: Optional[SamplingParams] = None) -> Iterator[str]:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": True,
            **(params or SamplingParams()).to_payload(),
        }
        with self._client.stream("POST", self.url, json=payload, headers=self.headers) as resp:
            if resp.status_code != 200:
                resp.read()
                raise EngineError(f"vLLM request failed ({resp.status_code}): {resp.text}")
            buffer = ""
            for line in resp.iter_lines():
                if not line.startswith("data: "):
                    continue
                data_str = line[6:].strip()
                if data_str == "[DONE]":
                    break
                try:
                    data = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.warning("Skipping malformed SSE payload: %r", data_str[:80])
                    continue
                choices = data.get("choices") or []
                if not choices:
                    continue
                # Tokens may straddle events; carry the unterminated tail over
                buffer += choices[0].get("text") or ""
                while ">" in buffer:
                    piece, buffer = buffer.split(">", 1)
                    if piece.strip():
                        yield piece + ">"

    def close(self) -> None:
        self._client.close()


class VLLMGenerationEngine:
    """
    Runs one generation at a time on a background thread.

    ``on_token`` receives every fragment in stream order, then exactly one of
    ``on_done(stopped)`` or ``on_error(exc)`` fires.
    """
    def __init__(self, transport: VLLMCompletionsTransport):
        self.transport = transport
        self._stop     = threading.Event()
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def load(self) -> None:
        self.transport.check()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self,
              prompt: str,
              params: Optional[SamplingParams],
              on_token: Callable[[str], None],
              on_done: Callable[[bool], None],
              on_error: Callable[[BaseException], None]) -> None:
        if self.running:
            if not self._finished.is_set():
                raise EngineError("generation already running")
            # Previous run is only delivering its final callback
            self.join()
        self._stop.clear()
        self._finished.clear()

        def run():
            try:
                for token_text in self.transport.stream(prompt, params):
                    if self._stop.is_set():
                        break
                    on_token(token_text)
            except Exception as e:
                logger.exception("Generation failed")
                self._finished.set()
                on_error(e)
                return
            self._finished.set()
            on_done(self._stop.is_set())

        self._thread = threading.Thread(target=run, name="vyvo-generate", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def close(self) -> None:
        self.stop()
        self.join()
        self.transport.close()
