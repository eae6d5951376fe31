"""
sse_channel.py

Per-subscriber Server-Sent Events channel.

Requirements:
- No persistence: frames are pushed only while the browser tab is connected.
- One bounded Queue per connection: writers never block longer than the write timeout.
- Server-Sent Events (SSE): Flask streams `data: <json>` frames plus a periodic heartbeat comment.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List

from gitlab_helpers import TransportWriteFailure

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"

# Wakes up a reader blocked on the queue once the channel is closed.
_CLOSED = object()

CloseObserver = Callable[["SSEConnection"], None]


class ConnectionState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


def format_sse_data(payload: Dict[str, Any]) -> str:
    msg = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"data: {msg}\n\n"


class SSEConnection:
    """
    One open push channel owned by exactly one subscriber.

    State machine: OPEN -> CLOSING -> CLOSED. Close observers run exactly once, during CLOSING.
    A write on a channel that is no longer OPEN, or whose queue stays full for `write_timeout`
    seconds, raises TransportWriteFailure. Nothing is retried here; reconnecting is the client's job.
    """

    def __init__(self, subscriber_id: str, max_queue_size: int = 200, write_timeout: float = 1.0) -> None:
        self.subscriber_id = subscriber_id
        self.connection_id = uuid.uuid4().hex
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_queue_size)
        self._write_timeout = write_timeout
        self._lock = threading.Lock()
        self._state = ConnectionState.OPEN
        self._observers: List[CloseObserver] = []

    def __repr__(self) -> str:
        return f"SSEConnection(subscriber_id={self.subscriber_id!r}, id={self.connection_id[:8]}, state={self._state.value})"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    def add_close_observer(self, observer: CloseObserver) -> None:
        """Register a callback fired once on close. Fires immediately if the channel is already closed."""
        with self._lock:
            if self._state is ConnectionState.OPEN:
                self._observers.append(observer)
                return
        observer(self)

    def write(self, frame: str) -> None:
        if not self.is_open:
            raise TransportWriteFailure(f"connection {self.connection_id[:8]} is {self._state.value}")
        try:
            self._queue.put(frame, timeout=self._write_timeout)
        except queue.Full:
            raise TransportWriteFailure(
                f"connection {self.connection_id[:8]} did not drain within {self._write_timeout}s"
            ) from None

    def close(self) -> None:
        with self._lock:
            if self._state is not ConnectionState.OPEN:
                return
            self._state = ConnectionState.CLOSING
            observers = list(self._observers)
            self._observers.clear()

        for observer in observers:
            try:
                observer(self)
            except Exception:
                logger.exception("[sse] close observer failed subscriber=%s", self.subscriber_id)

        self._state = ConnectionState.CLOSED
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # The reader re-checks the state after every frame, it will stop on its own.
            pass

    def frames(self, heartbeat_interval: float = 30.0) -> Iterator[str]:
        """
        Blocking frame iterator for the streaming response.

        Yields queued frames in order and a heartbeat comment every `heartbeat_interval` seconds,
        whether or not other frames went out in between. When the consumer goes away (the WSGI
        server closes the generator, or yielding fails) the channel is closed exactly once.
        """
        next_heartbeat = time.monotonic() + heartbeat_interval
        try:
            while self.is_open:
                remaining = next_heartbeat - time.monotonic()
                if remaining <= 0:
                    next_heartbeat = time.monotonic() + heartbeat_interval
                    yield HEARTBEAT_FRAME
                    continue
                try:
                    item = self._queue.get(timeout=remaining)
                except queue.Empty:
                    continue
                if item is _CLOSED:
                    break
                yield item
        finally:
            self.close()
