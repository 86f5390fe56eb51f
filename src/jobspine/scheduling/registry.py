"""Worker registry - job type to worker resolution.

Manifesto:
    Business logic lives in workers owned by other teams; the engine only
    needs to know which worker handles a job. A Worker is any value that
    satisfies the :class:`Worker` protocol. The registry maps
    ``job_type -> [Worker]`` and resolution is a pure predicate search:

    1. the first worker of the job's type whose ``can_handle(job)`` is True
    2. otherwise the single worker of that type, if exactly one exists
    3. otherwise WorkerNotFoundError

    This lets one coarse type (e.g. ``"custom"``) fan out to many named
    jobs distinguished by ``can_handle`` on ``job.name``.

Tags:
    jobspine, scheduling, registry, workers, dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any, Protocol, runtime_checkable

from jobspine.core.errors import WorkerNotFoundError
from jobspine.core.logging import get_logger

from .models import Job

logger = get_logger(__name__)


@runtime_checkable
class Worker(Protocol):
    """Business-logic component for one job type.

    ``process`` may be a plain function or a coroutine function; it may
    raise, and its return value is stored as the execution result (it
    must be JSON serialisable).
    """

    job_type: str

    def can_handle(self, job: Job) -> bool:
        """Claim ``job`` explicitly (e.g. by ``job.name``)."""
        ...

    def process(self, job: Job, parameters: dict[str, Any]) -> Any:
        """Run the job and return its result."""
        ...


class FunctionWorker:
    """Adapt a plain callable to the :class:`Worker` protocol.

    Example:
        >>> def post_interest(job, params):
        ...     return {"posted": params["account_count"]}
        >>> worker = FunctionWorker("interest", post_interest, names={"eod-interest"})
    """

    def __init__(
        self,
        job_type: str,
        fn: Callable[[Job, dict[str, Any]], Any],
        *,
        names: Iterable[str] | None = None,
    ) -> None:
        self.job_type = job_type
        self.fn = fn
        self.names = frozenset(names or ())

    def can_handle(self, job: Job) -> bool:
        return job.name in self.names

    def process(self, job: Job, parameters: dict[str, Any]) -> Any:
        return self.fn(job, parameters)

    def __repr__(self) -> str:
        name = getattr(self.fn, "__name__", repr(self.fn))
        return f"FunctionWorker({self.job_type!r}, {name})"


class WorkerRegistry:
    """Registry of workers keyed by job type.

    Example:
        >>> registry = WorkerRegistry()
        >>> registry.register(FunctionWorker("statement", generate_statement))
        >>> registry.resolve(job).process(job, job.parameters)
    """

    def __init__(self) -> None:
        self._workers: dict[str, list[Worker]] = {}
        self._lock = threading.Lock()

    def register(self, worker: Worker) -> None:
        """Register ``worker`` for its ``job_type``.

        Raises:
            TypeError: If ``worker`` does not satisfy the Worker protocol
        """
        if not isinstance(worker, Worker) or not isinstance(getattr(worker, "job_type", None), str):
            raise TypeError(f"{worker!r} does not implement the Worker protocol")
        with self._lock:
            workers = self._workers.setdefault(worker.job_type, [])
            if any(w is worker for w in workers):
                return
            workers.append(worker)
        logger.info("worker_registered", job_type=worker.job_type, worker=repr(worker))

    def unregister(self, worker: Worker) -> bool:
        """Remove a registered worker. Returns False if it was not registered."""
        with self._lock:
            workers = self._workers.get(worker.job_type, [])
            for i, w in enumerate(workers):
                if w is worker:
                    del workers[i]
                    if not workers:
                        del self._workers[worker.job_type]
                    return True
        return False

    def workers_for(self, job_type: str) -> list[Worker]:
        with self._lock:
            return list(self._workers.get(job_type, []))

    def has_worker(self, job_type: str) -> bool:
        return bool(self.workers_for(job_type))

    def job_types(self) -> list[str]:
        with self._lock:
            return sorted(self._workers)

    def resolve(self, job: Job) -> Worker:
        """Pick the worker for ``job``.

        Raises:
            WorkerNotFoundError: If no worker claims the job and the type
                does not have exactly one worker to fall back to
        """
        workers = self.workers_for(job.job_type)
        for worker in workers:
            if worker.can_handle(job):
                return worker
        if len(workers) == 1:
            return workers[0]
        raise WorkerNotFoundError(job.job_type, job.name)

    def __len__(self) -> int:
        with self._lock:
            return sum(len(ws) for ws in self._workers.values())
