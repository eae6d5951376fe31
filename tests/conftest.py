from typing import List

import pytest

from client_registry import ClientRegistry
from gitlab_helpers import TransportWriteFailure
from settings import Settings


class RecordingConnection:
    """In-memory stand-in for an SSE connection that records every frame."""

    def __init__(self, fail: bool = False) -> None:
        self.frames: List[str] = []
        self.fail = fail
        self.closed = False
        self.close_calls = 0
        self._observers = []

    def write(self, frame: str) -> None:
        if self.fail or self.closed:
            raise TransportWriteFailure("forced failure")
        self.frames.append(frame)

    def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        observers, self._observers = self._observers, []
        for observer in observers:
            observer(self)

    def add_close_observer(self, observer) -> None:
        if self.closed:
            observer(self)
            return
        self._observers.append(observer)


@pytest.fixture
def settings() -> Settings:
    return Settings(heartbeat_interval=0.05, sse_write_timeout=0.01, dispatch_workers=1)


@pytest.fixture
def registry() -> ClientRegistry:
    return ClientRegistry()


@pytest.fixture
def make_connection():
    def _make(fail: bool = False) -> RecordingConnection:
        return RecordingConnection(fail=fail)

    return _make
