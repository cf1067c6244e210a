"""Tracks the jobs that are currently running and reacts to their events."""

from __future__ import annotations

import logging
import queue
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable

_EVENT_BUFFER = 10


class EventType(str, Enum):
    """What happened to an observed job."""

    UPDATE = "update"
    DELETE = "delete"
    CREATE = "create"
    FAILED = "failed"
    SUCCEEDED = "succeeded"
    RUNNING = "running"


Callback = Callable[["ObservableJob"], None]


@dataclass
class ObservableJob:
    """A job seen by the observer, with the callbacks waiting for its outcome."""

    name: str = ""
    namespace: str = ""
    job_type: str = ""
    event: EventType | None = None
    exclusive: bool = False
    repository: str = ""
    callbacks: list[Callback] = field(default_factory=list)

    @property
    def key(self) -> str:
        """The ``namespace/name`` under which the job is observed."""
        return f"{self.namespace}/{self.name}"


class Observer:
    """Keeps the state of observed jobs and processes their events."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._events: queue.Queue[ObservableJob | None] = queue.Queue(maxsize=_EVENT_BUFFER)
        self._jobs: dict[str, ObservableJob] = {}
        self._lock = threading.RLock()
        self._log = logger or logging.getLogger(__name__).getChild("observer")
        self._thread: threading.Thread | None = None
        self.failed_jobs: Counter[tuple[str, str]] = Counter()
        self.successful_jobs: Counter[tuple[str, str]] = Counter()
        self.total_jobs: Counter[tuple[str, str]] = Counter()

    def start(self) -> None:
        """Start processing published events in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="observer", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Process the events published so far, then stop the background thread."""
        if self._thread is None:
            return
        self._events.put(None)
        self._thread.join()
        self._thread = None

    def publish(self, event: ObservableJob) -> None:
        """Queue an event for processing by the background thread."""
        self._events.put(event)

    def _run(self) -> None:
        while (event := self._events.get()) is not None:
            try:
                self.handle_event(event)
            except Exception:  # noqa: BLE001 - keep observing after a failing callback
                self._log.exception("handling event failed: jobName=%s", event.key)

    def handle_event(self, event: ObservableJob) -> None:
        """Record an event and invoke the callbacks of the job where due."""
        job_name = event.key
        with self._lock:
            existing = self._jobs.get(job_name)
            # Keep the callbacks registered before this event.
            if existing is not None:
                event = replace(event, callbacks=list(existing.callbacks))

            self._log.info(
                "new event on observed job: event=%s jobName=%s",
                event.event.value if event.event else None,
                job_name,
            )

            if event.event is EventType.FAILED:
                self._count(self.failed_jobs, event)
                _invoke_callbacks(event)
            elif event.event is EventType.SUCCEEDED:
                self._jobs[job_name] = event
                _invoke_callbacks(event)
                # Jobs not seen before succeeded before a restart; don't count them.
                if existing is not None:
                    self._log.info("job succeeded: jobName=%s", job_name)
                    self._count(self.successful_jobs, event)
            elif event.event is EventType.DELETE:
                self._log.info("deleting job from observer: jobName=%s", job_name)
                self._jobs.pop(job_name, None)
                _invoke_callbacks(event)
            else:
                self._jobs[job_name] = event

    def _count(self, counter: Counter[tuple[str, str]], event: ObservableJob) -> None:
        labels = (event.namespace, event.job_type)
        counter[labels] += 1
        self.total_jobs[labels] += 1

    def get_job_by_name(self, job_name: str) -> ObservableJob | None:
        """Return the job observed as ``namespace/name``, if any."""
        with self._lock:
            return self._jobs.get(job_name)

    def get_jobs_by_repository(self, repository: str) -> list[ObservableJob]:
        """Return every observed job of the given repository."""
        with self._lock:
            return [job for job in self._jobs.values() if job.repository == repository]

    def is_exclusive_job_running(self, repository: str) -> bool:
        """Tell whether an exclusive job is running on the repository."""
        return any(
            job.exclusive and job.event is EventType.RUNNING
            for job in self.get_jobs_by_repository(repository)
        )

    def is_any_job_running(self, repository: str) -> bool:
        """Tell whether any job is running on the repository."""
        return any(
            job.event is EventType.RUNNING for job in self.get_jobs_by_repository(repository)
        )

    def is_concurrent_jobs_limit_reached(self, job_type: str, limit: int) -> bool:
        """Tell whether ``limit`` jobs of ``job_type`` are observed; no limit if not positive."""
        if limit <= 0:
            return False
        with self._lock:
            jobs = list(self._jobs.values())
        return sum(1 for job in jobs if job.job_type == job_type) >= limit

    def register_callback(self, name: str, callback: Callback) -> None:
        """Invoke ``callback`` when the job ``name`` succeeds, fails or is deleted."""
        with self._lock:
            existing = self._jobs.get(name)
            if existing is None:
                self._jobs[name] = ObservableJob(callbacks=[callback])
            else:
                existing.callbacks.append(callback)


def _invoke_callbacks(event: ObservableJob) -> None:
    for callback in event.callbacks:
        callback(event)


_observer: Observer | None = None
_observer_lock = threading.Lock()


def get_observer() -> Observer:
    """Return the running observer, creating and starting it on first use."""
    global _observer
    with _observer_lock:
        if _observer is None:
            _observer = Observer()
            _observer.start()
        return _observer