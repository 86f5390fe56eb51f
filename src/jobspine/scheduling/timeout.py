"""Deadline race for worker calls.

``run_with_deadline(fn, timeout_seconds)`` runs ``fn`` in a daemon
thread and waits for whichever settles first: the call or the deadline.

The call is never interrupted. On timeout the thread keeps running and
anything it does afterwards (a database write already in flight, a
message already being sent) is orphaned work. The thread is a daemon so
an orphaned call cannot keep the process alive at shutdown.

Example::

    from jobspine.scheduling.timeout import run_with_deadline

    try:
        result = run_with_deadline(lambda: worker.process(job, params), 600)
    except JobTimeoutError:
        ...  # recorded as a failed attempt
"""

from __future__ import annotations

import contextvars
import threading
from collections.abc import Callable
from concurrent.futures import Future, wait
from typing import TypeVar

from jobspine.core.errors import JobTimeoutError

T = TypeVar("T")


def run_with_deadline(
    fn: Callable[[], T],
    timeout_seconds: float,
    *,
    name: str = "jobspine-attempt",
) -> T:
    """Run ``fn`` and return its result, or raise when the deadline passes.

    Exceptions raised by ``fn`` propagate unchanged. ``fn`` runs in a copy
    of the caller's context, so bound log context carries over.

    Raises:
        JobTimeoutError: If ``fn`` has not returned after ``timeout_seconds``
    """
    future: Future[T] = Future()
    context = contextvars.copy_context()

    def _runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(context.run(fn))
        except BaseException as e:  # noqa: BLE001 - re-raised in the caller thread
            future.set_exception(e)

    thread = threading.Thread(target=_runner, name=name, daemon=True)
    thread.start()
    done, _ = wait([future], timeout=timeout_seconds)
    if not done:
        raise JobTimeoutError(timeout_seconds)
    return future.result()
