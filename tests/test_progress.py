"""
Tests for the progress bus.
"""

import threading
import time

from toolbelt.core import ProgressBus
from toolbelt.models import NodeState


def test_callbacks_receive_events_in_publish_order():
    bus = ProgressBus()
    received = []
    bus.subscribe(received.append)

    bus.emit("A", NodeState.PENDING, NodeState.READY)
    bus.emit("A", NodeState.READY, NodeState.RUNNING, "building")
    assert bus.flush(timeout=5)

    assert [(e.old_state, e.new_state) for e in received] == [
        (NodeState.PENDING, NodeState.READY),
        (NodeState.READY, NodeState.RUNNING),
    ]
    assert received[1].message == "building"
    assert received[0].timestamp <= received[1].timestamp
    bus.close()


def test_failing_handler_does_not_stop_delivery():
    bus = ProgressBus()
    received = []

    def broken(event):
        raise ValueError("consumer bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit("A", NodeState.RUNNING, NodeState.INSTALLED)
    bus.emit("B", NodeState.RUNNING, NodeState.INSTALLED)
    bus.close(timeout=5)
    assert [e.tool_id for e in received] == ["A", "B"]


def test_slow_handler_does_not_block_publisher():
    bus = ProgressBus()
    received = []

    def slow(event):
        time.sleep(0.1)
        received.append(event.tool_id)

    bus.subscribe(slow)
    started = time.monotonic()
    for tool_id in "ABC":
        bus.emit(tool_id, NodeState.PENDING, NodeState.READY)
    assert time.monotonic() - started < 0.1

    assert bus.flush(timeout=5)
    assert received == ["A", "B", "C"]
    bus.close()


def test_handler_runs_off_the_publishing_thread():
    bus = ProgressBus()
    threads = []
    bus.subscribe(lambda event: threads.append(threading.current_thread()))
    bus.emit("A", NodeState.PENDING, NodeState.READY)
    bus.close(timeout=5)
    assert threads and threads[0] is not threading.current_thread()


def test_full_handler_queue_drops_oldest():
    bus = ProgressBus()
    gate = threading.Event()
    received = []

    def blocked(event):
        gate.wait(5)
        received.append(event.tool_id)

    bus.subscribe(blocked, maxlen=2)
    bus.emit("A", NodeState.PENDING, NodeState.READY)
    subscription = next(iter(bus._handlers.values()))
    # Wait until A is being handled so the queue holds only what follows
    deadline = time.monotonic() + 5
    while len(subscription) and time.monotonic() < deadline:
        time.sleep(0.01)

    for tool_id in "BCD":
        bus.emit(tool_id, NodeState.PENDING, NodeState.READY)
    gate.set()
    bus.close(timeout=5)

    assert received == ["A", "C", "D"]
    assert subscription.dropped == 1


def test_buffer_drops_oldest_when_full():
    bus = ProgressBus()
    buffer = bus.subscribe_buffer(maxlen=2)
    for tool_id in "ABC":
        bus.emit(tool_id, NodeState.PENDING, NodeState.READY)

    assert len(buffer) == 2
    assert buffer.dropped == 1
    assert [e.tool_id for e in buffer.drain()] == ["B", "C"]
    assert len(buffer) == 0


def test_unsubscribe():
    bus = ProgressBus()
    received = []
    sub_id = bus.subscribe(received.append)
    buffer = bus.subscribe_buffer()
    bus.unsubscribe(sub_id)
    bus.unsubscribe(buffer)

    bus.emit("A", NodeState.PENDING, NodeState.READY)
    assert bus.flush(timeout=5)
    assert received == []
    assert buffer.drain() == []


def test_publish_without_subscribers():
    event = ProgressBus().emit("A", NodeState.PENDING, NodeState.SKIPPED, "cancelled")
    assert event.tool_id == "A"
