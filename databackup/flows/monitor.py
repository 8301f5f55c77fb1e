"""
Run Monitor
============

One-way, non-blocking channel from the worker to any number of
consumers (WebSocket clients, the status endpoint, tests).

  - Ring buffer of the last N events (history for late subscribers)
  - One bounded asyncio.Queue per subscriber, filled with put_nowait();
    a full queue drops its oldest entry. The worker never awaits a
    consumer.

Event entries are plain dicts:
    {"kind": "run",      "flow", "state", ...}
    {"kind": "task",     "flow", "subject", "state"}
    {"kind": "object",   "flow", "subject", "object", "status", "detail"}
    {"kind": "progress", "flow", "progress", "total"}
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime

from databackup.config import LOCAL_TZ

logger = logging.getLogger("databackup.flows.monitor")


class RunMonitor:
    """Ring buffer + subscriber queues."""

    def __init__(self, buffer_size: int = 500, queue_size: int = 1000):
        self.buffer: deque[dict] = deque(maxlen=buffer_size)
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()

    def publish(self, kind: str, **fields) -> dict:
        entry = {
            "ts": datetime.now(LOCAL_TZ).strftime("%H:%M:%S"),
            "kind": kind,
            **fields,
        }
        self.buffer.append(entry)

        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                queue.put_nowait(entry)
            except asyncio.QueueFull:
                logger.debug("Subscriber queue full, event dropped")
        return entry

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def get_history(self) -> list[dict]:
        """Whole buffer as a list."""
        return list(self.buffer)
