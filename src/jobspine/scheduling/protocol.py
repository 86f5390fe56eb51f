"""Scheduler backend protocol.

┌──────────────────────────────────────────────────────────────────────────────┐
│  SCHEDULER BACKEND PROTOCOL                                                   │
│                                                                               │
│  The poll scheduler operates as "beat-as-poller": a backend controls WHEN    │
│  ticks happen, while PollScheduler controls WHAT happens on each tick.       │
│                                                                               │
│   ┌─────────────────┐       tick()       ┌──────────────────────┐            │
│   │  Thread Backend │ ─────────────────► │  PollScheduler       │            │
│   │  (default)      │                    │                      │            │
│   └─────────────────┘                    │  - find due jobs     │            │
│           ▲                              │  - skip in-flight    │            │
│           │ wake()                       │  - hand to executor  │            │
│   ┌─────────────────┐                    └──────────────────────┘            │
│   │  Wake timers    │  (early tick only; the store decides what is due)      │
│   └─────────────────┘                                                         │
│                                                                               │
│  Responsibility Split:                                                        │
│  - Backend: Controls timing (thread sleep, early wake-up)                    │
│  - Scheduler: Controls logic (due query, local de-duplication, dispatch)     │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable scheduler timing backends.

    A backend is responsible ONLY for timing — calling the tick callback
    at the specified interval, and earlier when ``wake()`` is called. All
    due-job evaluation lives in PollScheduler.
    """

    name: str

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 5.0,
    ) -> None:
        """Start the tick loop.

        Args:
            tick_callback: Async function to call on each tick.
            interval_seconds: How often to tick.
        """
        ...

    def stop(self) -> None:
        """Stop the tick loop, waiting for the current tick to complete."""
        ...

    def wake(self) -> None:
        """Run the next tick now instead of at the end of the interval."""
        ...

    def health(self) -> dict[str, Any]:
        """Return backend health status.

        Returns:
            dict with at least:
                - healthy: bool — whether backend is running
                - backend: str — backend name
                - tick_count: int — number of ticks executed
                - last_tick: str | None — ISO timestamp of last tick
        """
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }
