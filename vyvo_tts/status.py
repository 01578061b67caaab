"""
Session status and change notification.

The session merges two independently running collaborators (the generation
engine and the decode pipeline) into one observable status.
"""
from __future__ import annotations
from enum import Enum
from typing import Callable, List
import logging
import threading

logger = logging.getLogger(__name__)


class ModelStatus(str, Enum):
    INIT = "init"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


class InvalidStateError(RuntimeError):
    """Operation not allowed in the current status; the status is unchanged."""


class EngineError(RuntimeError):
    """An external engine failed to load or to generate."""


def merge_status(generation: ModelStatus, decode: ModelStatus) -> ModelStatus:
    """Combine the generation and decode sub-statuses into the session status."""
    pair = (generation, decode)
    if ModelStatus.ERROR in pair:
        return ModelStatus.ERROR
    if ModelStatus.LOADING in pair:
        return ModelStatus.LOADING
    if ModelStatus.INIT in pair:
        # One side loaded while the other has not started yet
        return ModelStatus.LOADING if generation != decode else ModelStatus.INIT
    if ModelStatus.GENERATING in pair:
        return ModelStatus.GENERATING
    return ModelStatus.READY


StatusCallback = Callable[[ModelStatus], None]


class StatusBroadcaster:
    """Fan-out of status changes to subscribed callbacks."""

    def __init__(self) -> None:
        self._subscribers: List[StatusCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: StatusCallback) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: StatusCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, status: ModelStatus) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(status)
            except Exception:
                logger.exception("Status subscriber %r failed", callback)
