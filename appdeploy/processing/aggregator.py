"""Log aggregator: coalesces high-frequency log writes into periodic flushes.

Subprocess output can arrive many times per second. Writing every fragment
straight into the shared LogBuffer would wake every subscriber for each
fragment, so appends collect in a pending buffer instead. The first append
into an empty pending buffer arms a single timer on the event loop; appends
that arrive before it fires ride along in the same flush. Producers never
block, and the buffer is mutated at most once per ``flush_delay`` window.

``append`` is safe to call from any thread. Flushes and ``clear`` always
execute on the event loop, which is the only place LogBuffer is mutated.
"""

from __future__ import annotations

import asyncio
import logging
import threading

from appdeploy.config import DEFAULT_FLUSH_DELAY
from appdeploy.storage.log_buffer import LogBuffer

logger = logging.getLogger(__name__)


class LogAggregator:
    """Single-flight debounced writer in front of a LogBuffer.

    Args:
        buffer: The shared buffer that receives flushed text.
        flush_delay: Seconds between the first pending append and its flush.
        loop: Event loop that owns the buffer. Defaults to the loop running
            when ``append`` or ``clear`` is first called on it.
    """

    def __init__(
        self,
        buffer: LogBuffer,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.buffer = buffer
        self.flush_delay = flush_delay
        self._loop = loop
        self._lock = threading.Lock()
        self._pending: list[str] = []
        self._flush_scheduled = False
        self._timer: asyncio.TimerHandle | None = None
        # Bumped by clear() so timers armed before it become no-ops
        self._generation = 0

    @property
    def flush_scheduled(self) -> bool:
        with self._lock:
            return self._flush_scheduled

    @property
    def pending_text(self) -> str:
        with self._lock:
            return "".join(self._pending)

    def append(self, text: str) -> None:
        """Queue one log line. Thread-safe; never blocks on the buffer."""
        loop = self._resolve_loop()
        with self._lock:
            self._pending.append(text + "\n")
            if self._flush_scheduled:
                return
            self._flush_scheduled = True
            generation = self._generation

        if self._on_loop(loop):
            self._arm(generation)
        else:
            loop.call_soon_threadsafe(self._arm, generation)

    def clear(self) -> None:
        """Drop pending and retained text and cancel any scheduled flush."""
        loop = self._resolve_loop()
        if not self._on_loop(loop):
            loop.call_soon_threadsafe(self.clear)
            return

        with self._lock:
            self._pending.clear()
            self._flush_scheduled = False
            self._generation += 1
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()
        self.buffer.clear()

    def flush_now(self) -> None:
        """Flush immediately instead of waiting for the timer. Loop only."""
        if self._timer is not None:
            self._timer.cancel()
        self._flush()

    def close(self) -> None:
        """Cancel the pending timer without flushing."""
        with self._lock:
            self._flush_scheduled = False
            self._generation += 1
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _arm(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or not self._flush_scheduled:
                return
            if self._timer is not None:
                # Already armed by an earlier _arm for this window
                return
        assert self._loop is not None
        self._timer = self._loop.call_later(self.flush_delay, self._flush)

    def _flush(self) -> None:
        with self._lock:
            chunk = "".join(self._pending)
            self._pending.clear()
            self._flush_scheduled = False
            self._timer = None

        if not chunk:
            return
        self.buffer.append(chunk)
        logger.debug("Flushed %d chars into log buffer", len(chunk))

    def _resolve_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            # Raises RuntimeError when first used off-loop without a bound loop
            self._loop = asyncio.get_running_loop()
        return self._loop

    @staticmethod
    def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
        try:
            return asyncio.get_running_loop() is loop
        except RuntimeError:
            return False
