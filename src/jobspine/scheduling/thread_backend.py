"""Threading-based scheduler backend.

This is the default timing backend for jobspine nodes. It uses the stdlib
threading module.

┌──────────────────────────────────────────────────────────────────────────────┐
│  THREAD BACKEND                                                               │
│                                                                               │
│   start()                                                                     │
│      │                                                                        │
│      ▼                                                                        │
│   ┌─────────────────────────────────────────────────────────┐                │
│   │              Daemon Thread (loop)                       │                │
│   │                                                         │                │
│   │   while True:                                           │                │
│   │       wake_event.wait(interval)   ◄── wake() / stop()   │                │
│   │       if stopping: break                                │                │
│   │       tick_count += 1                                   │                │
│   │       asyncio.run(tick_callback())                      │                │
│   └─────────────────────────────────────────────────────────┘                │
│                                                                               │
│   stop()                                                                      │
│      stop_event.set(); wake_event.set()                                       │
│      thread.join(timeout=5.0)                                                 │
│                                                                               │
│  1. Daemon thread — doesn't block process exit                               │
│  2. Event-based stop and wake-up — no sleeping through a shutdown            │
│  3. asyncio.run per tick — keeps callback async-compatible                   │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime
from typing import Any

from jobspine.core.logging import get_logger

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


class ThreadSchedulerBackend:
    """Threading-based scheduler backend.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>>
        >>> async def my_tick():
        ...     print("Tick!")
        ...
        >>> backend.start(my_tick, interval_seconds=5.0)
        >>> backend.wake()   # tick now
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self, *, tick_immediately: bool = True) -> None:
        """Initialize thread backend.

        Args:
            tick_immediately: Run the first tick right after start instead
                of one interval later.
        """
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 5.0
        self._started = False
        self._tick_immediately = tick_immediately
        self._lock = threading.Lock()

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 5.0,
    ) -> None:
        """Start the tick loop in a daemon thread.

        Args:
            tick_callback: Async function to call on each tick.
            interval_seconds: How often to tick.
        """
        if self._started:
            logger.warning("thread_backend_already_started")
            return

        self._interval = interval_seconds
        self._stop_event.clear()
        self._wake_event.clear()
        if self._tick_immediately:
            self._wake_event.set()

        def _loop() -> None:
            logger.info("thread_backend_started", interval_seconds=interval_seconds)
            while True:
                self._wake_event.wait(interval_seconds)
                self._wake_event.clear()
                if self._stop_event.is_set():
                    break

                with self._lock:
                    self._tick_count += 1
                    self._last_tick = datetime.now(UTC)

                try:
                    asyncio.run(tick_callback())
                except Exception:
                    logger.exception("tick_failed")

            logger.info("thread_backend_stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="jobspine-scheduler")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the tick loop gracefully.

        Waits up to 5 seconds for the current tick to complete.
        """
        if not self._started:
            return

        self._stop_event.set()
        self._wake_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("thread_backend_stop_timeout")

        self._started = False

    def wake(self) -> None:
        """Run the next tick as soon as the current one (if any) finishes."""
        if self._started:
            self._wake_event.set()

    def health(self) -> dict[str, Any]:
        """Return backend health status."""
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        """Return structured health status."""
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )

    @property
    def is_running(self) -> bool:
        """Check if backend is currently running."""
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick
