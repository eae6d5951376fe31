"""Tests for SSEConnection: framing, heartbeat and the close state machine."""

import json
import time

import pytest

from client_registry import ClientRegistry
from gitlab_helpers import TransportWriteFailure
from sse_channel import HEARTBEAT_FRAME, ConnectionState, SSEConnection, format_sse_data


def test_format_sse_data():
    frame = format_sse_data({"type": "connected", "message": "hi"})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "connected", "message": "hi"}


def test_frames_in_write_order():
    conn = SSEConnection("u1")
    conn.write("data: 1\n\n")
    conn.write("data: 2\n\n")

    it = conn.frames(heartbeat_interval=0.01)
    assert next(it) == "data: 1\n\n"
    assert next(it) == "data: 2\n\n"
    it.close()


def test_heartbeat_when_idle():
    conn = SSEConnection("u1")
    it = conn.frames(heartbeat_interval=0.01)
    assert next(it) == HEARTBEAT_FRAME
    it.close()


def test_heartbeat_keeps_its_interval_under_traffic():
    conn = SSEConnection("u1")
    for i in range(5):
        conn.write(f"data: {i}\n\n")

    it = conn.frames(heartbeat_interval=0.05)
    assert next(it) == "data: 0\n\n"
    time.sleep(0.1)
    # Frames are still queued, the heartbeat is due anyway.
    assert next(it) == HEARTBEAT_FRAME
    assert next(it) == "data: 1\n\n"
    it.close()


def test_generator_close_closes_connection():
    conn = SSEConnection("u1")
    it = conn.frames(heartbeat_interval=0.01)
    next(it)
    it.close()
    assert conn.state is ConnectionState.CLOSED


def test_observers_fire_exactly_once():
    conn = SSEConnection("u1")
    calls = []
    conn.add_close_observer(calls.append)

    conn.close()
    conn.close()

    assert calls == [conn]
    assert conn.state is ConnectionState.CLOSED


def test_observer_added_after_close_fires_immediately():
    conn = SSEConnection("u1")
    conn.close()
    calls = []
    conn.add_close_observer(calls.append)
    assert calls == [conn]


def test_failing_observer_does_not_block_others():
    conn = SSEConnection("u1")
    calls = []

    def boom(_c):
        raise RuntimeError("boom")

    conn.add_close_observer(boom)
    conn.add_close_observer(calls.append)
    conn.close()

    assert calls == [conn]


def test_write_after_close_fails():
    conn = SSEConnection("u1")
    conn.close()
    with pytest.raises(TransportWriteFailure):
        conn.write("data: x\n\n")


def test_full_queue_times_out():
    conn = SSEConnection("u1", max_queue_size=1, write_timeout=0.01)
    conn.write("data: 1\n\n")
    with pytest.raises(TransportWriteFailure):
        conn.write("data: 2\n\n")


def test_frames_stop_after_close():
    conn = SSEConnection("u1")
    conn.close()
    assert list(conn.frames(heartbeat_interval=0.01)) == []


def test_stream_close_prunes_registry_entry():
    registry = ClientRegistry()
    conn = SSEConnection("u1")
    registry.connect("u1", conn)

    it = conn.frames(heartbeat_interval=0.01)
    first = next(it)
    assert json.loads(first[len("data: "):])["type"] == "connected"
    it.close()

    assert registry.connection_count("u1") == 0
    assert registry.send_to("u1", {"type": "webhook"}) == 0


def test_slow_consumer_is_pruned_on_send():
    registry = ClientRegistry()
    conn = SSEConnection("u1", max_queue_size=1, write_timeout=0.01)
    # The connected frame fills the single slot.
    registry.connect("u1", conn)

    assert registry.send_to("u1", {"type": "webhook"}) == 0
    assert conn.state is ConnectionState.CLOSED
    assert registry.connection_count("u1") == 0
