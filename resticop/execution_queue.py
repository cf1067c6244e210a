"""Per-repository priority queues; exclusive executors are handed out first."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from collections import Counter
from typing import Protocol

_EXCLUSIVE_PRIORITY = 1
_SHARED_PRIORITY = 2


class Executor(Protocol):
    """A job waiting to be executed against a repository."""

    exclusive: bool
    """True if the job cannot run together with others on the same repository."""
    logger: logging.Logger
    job_type: str
    job_namespace: str
    concurrency_limit: int
    repository: str

    def execute(self) -> None:
        """Trigger the actual job."""
        ...


class ExecutionQueue:
    """Holds a priority queue of executors for every repository."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, list[tuple[int, int, Executor]]] = {}
        self._sequence = itertools.count()
        self.queued: Counter[tuple[str, str]] = Counter()

    def add(self, executor: Executor) -> None:
        """Queue an executor for its repository."""
        priority = _EXCLUSIVE_PRIORITY if executor.exclusive else _SHARED_PRIORITY
        with self._lock:
            heap = self._queues.setdefault(executor.repository, [])
            heapq.heappush(heap, (priority, next(self._sequence), executor))
            self.queued[(executor.job_namespace, executor.job_type)] += 1

    def get(self, repository: str) -> Executor:
        """Remove and return the next executor; drop the repository's queue once empty."""
        with self._lock:
            heap = self._queues.get(repository)
            if not heap:
                raise KeyError(f"no queued executor for repository {repository!r}")
            _, _, executor = heapq.heappop(heap)
            if not heap:
                del self._queues[repository]
            self.queued[(executor.job_namespace, executor.job_type)] -= 1
            return executor

    def is_empty(self, repository: str) -> bool:
        """Tell whether nothing is queued for the repository."""
        with self._lock:
            return not self._queues.get(repository)

    def repositories(self) -> list[str]:
        """Return the repositories that currently have queued executors."""
        with self._lock:
            return list(self._queues)


_execution = ExecutionQueue()


def get_exec_queue() -> ExecutionQueue:
    """Return the shared execution queue."""
    return _execution