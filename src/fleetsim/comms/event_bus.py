"""EventBus: thread-safe pub/sub for internal event passing.

The telemetry bridge publishes snapshots and results here; the MQTT relay,
the HTTP API and tests subscribe.  Publishing never blocks the simulation
thread: a full subscriber queue drops its oldest message.
"""

from __future__ import annotations

import queue
import threading


class EventBus:
    """Simple thread-safe pub/sub for pushing events to subscribers."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[queue.Queue, str | None]] = []
        self._maxsize = maxsize

    def subscribe(self, event_type: str | None = None) -> queue.Queue:
        """Subscribe to events. Returns a Queue that receives matching events.

        With ``event_type`` set, only events of that type are delivered.
        """
        q: queue.Queue = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.append((q, event_type))
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            self._subscribers = [(s, f) for s, f in self._subscribers if s is not q]

    def publish(self, event_type: str, data: dict | list | None = None) -> None:
        msg: dict = {"type": event_type}
        if data is not None:
            msg["data"] = data
        with self._lock:
            for q, wanted in self._subscribers:
                if wanted is not None and wanted != event_type:
                    continue
                try:
                    q.put_nowait(msg)
                except queue.Full:
                    # Drop oldest; the newest event always lands.
                    try:
                        q.get_nowait()
                    except queue.Empty:
                        pass
                    try:
                        q.put_nowait(msg)
                    except queue.Full:
                        pass
