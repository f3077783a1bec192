"""
Progress bus: best-effort stream of node state transitions for front ends.
"""

import logging
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.plan import NodeState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressEvent(BaseModel):
    """One state transition of one tool."""
    tool_id: str
    old_state: NodeState
    new_state: NodeState
    timestamp: datetime = Field(default_factory=_utcnow)
    message: Optional[str] = None


class BufferedSubscription:
    """Bounded event buffer; the oldest events are dropped when full."""

    def __init__(self, maxlen: int):
        self._events: Deque[ProgressEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self.dropped = 0

    def _offer(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._events.maxlen is not None and len(self._events) == self._events.maxlen:
                self.dropped += 1
            self._events.append(event)

    def drain(self) -> List[ProgressEvent]:
        """Return and clear all buffered events."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class CallbackSubscription(BufferedSubscription):
    """
    Bounded queue drained by a dedicated thread that calls the handler.

    Publishing only enqueues, so a slow handler delays its own deliveries
    and nothing else.
    """

    def __init__(self, handler: Callable[[ProgressEvent], None], maxlen: int):
        super().__init__(maxlen)
        self.handler = handler
        self._changed = threading.Condition(self._lock)
        self._delivering = False
        self._closed = False
        self._thread = threading.Thread(target=self._deliver, name="toolbelt-progress", daemon=True)
        self._thread.start()

    def _offer(self, event: ProgressEvent) -> None:
        super()._offer(event)
        with self._changed:
            self._changed.notify_all()

    def _deliver(self) -> None:
        while True:
            with self._changed:
                self._changed.wait_for(lambda: self._events or self._closed)
                if not self._events:
                    return
                event = self._events.popleft()
                self._delivering = True
            try:
                self.handler(event)
            except Exception as exc:
                logger.error(f"Progress handler error for {event.tool_id}: {exc}")
            finally:
                with self._changed:
                    self._delivering = False
                    self._changed.notify_all()

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been handled."""
        with self._changed:
            return self._changed.wait_for(lambda: not self._events and not self._delivering, timeout)

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver what is queued, then stop the delivery thread."""
        with self._changed:
            self._closed = True
            self._changed.notify_all()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout)


class ProgressBus:
    """Multi-producer, multi-consumer event bus that never blocks publishers."""

    def __init__(self):
        self._lock = threading.RLock()
        self._handlers: Dict[str, CallbackSubscription] = {}
        self._buffers: Dict[str, BufferedSubscription] = {}

    def subscribe(self, handler: Callable[[ProgressEvent], None], maxlen: int = 1000) -> str:
        """Register a callback invoked on its own thread, in publish order, for every event."""
        sub_id = str(uuid.uuid4())
        subscription = CallbackSubscription(handler, maxlen)
        with self._lock:
            self._handlers[sub_id] = subscription
        return sub_id

    def subscribe_buffer(self, maxlen: int = 1000) -> BufferedSubscription:
        """Register a bounded buffer for consumers that poll."""
        subscription = BufferedSubscription(maxlen)
        with self._lock:
            self._buffers[str(uuid.uuid4())] = subscription
        return subscription

    def unsubscribe(self, subscription) -> None:
        with self._lock:
            if isinstance(subscription, BufferedSubscription):
                for key, value in list(self._buffers.items()):
                    if value is subscription:
                        self._buffers.pop(key)
                return
            removed = self._handlers.pop(subscription, None)
        if removed is not None:
            removed.close(timeout=0)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscriptions = list(self._buffers.values()) + list(self._handlers.values())
        for subscription in subscriptions:
            subscription._offer(event)

    def emit(self, tool_id: str, old_state: NodeState, new_state: NodeState,
             message: Optional[str] = None) -> ProgressEvent:
        event = ProgressEvent(tool_id=tool_id, old_state=old_state, new_state=new_state, message=message)
        self.publish(event)
        return event

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for callback subscribers to handle everything published so far.

        Args:
            timeout: Seconds to wait per subscriber, or None to wait indefinitely

        Returns:
            True if every subscriber caught up
        """
        with self._lock:
            handlers = list(self._handlers.values())
        return all([subscription.flush(timeout) for subscription in handlers])

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver queued events and stop every callback subscriber."""
        with self._lock:
            handlers = list(self._handlers.values())
            self._handlers.clear()
        for subscription in handlers:
            subscription.close(timeout)
