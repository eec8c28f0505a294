"""Bounded in-memory text buffer for the operator log.

Holds the most recent ``max_length`` characters of log text. When an append
pushes the buffer over the cap, the oldest characters are dropped.

The buffer has a single writer (LogAggregator's flush, which always runs on
the event loop) and any number of readers. Readers either read ``text``
directly or subscribe to a queue of updates for live streaming.
"""

from __future__ import annotations

import asyncio

from appdeploy.config import DEFAULT_LOG_MAX_LENGTH

# Update events delivered to subscribers: ("append", chunk) or ("clear", "")
LogUpdate = tuple[str, str]


class LogBuffer:
    """Append-only text with head-truncation and subscriber fan-out."""

    def __init__(self, max_length: int = DEFAULT_LOG_MAX_LENGTH) -> None:
        if max_length <= 0:
            raise ValueError("max_length must be positive")
        self._max_length = max_length
        self._text = ""
        self._subscribers: list[asyncio.Queue[LogUpdate]] = []

    @property
    def text(self) -> str:
        return self._text

    @property
    def length(self) -> int:
        return len(self._text)

    @property
    def max_length(self) -> int:
        return self._max_length

    def append(self, chunk: str) -> None:
        """Append a chunk, drop overflow from the head and notify subscribers."""
        if not chunk:
            return

        text = self._text + chunk
        overflow = len(text) - self._max_length
        if overflow > 0:
            text = text[overflow:]
        self._text = text

        self._publish(("append", chunk))

    def clear(self) -> None:
        self._text = ""
        self._publish(("clear", ""))

    def subscribe(self) -> asyncio.Queue[LogUpdate]:
        """Create a subscription queue for real-time streaming.

        Caller must call unsubscribe() when done.
        """
        queue: asyncio.Queue[LogUpdate] = asyncio.Queue(maxsize=1000)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[LogUpdate]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def _publish(self, update: LogUpdate) -> None:
        dead_subs: list[asyncio.Queue[LogUpdate]] = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(update)
            except asyncio.QueueFull:
                # Subscriber is too slow, drop it
                dead_subs.append(queue)

        for dead in dead_subs:
            self._subscribers.remove(dead)
