"""Helpers on the job objects managed by the operator."""

from __future__ import annotations

from typing import Protocol, Sequence, TypeVar


class _Status(Protocol):
    def has_succeeded(self) -> bool: ...

    def has_failed(self) -> bool: ...


class _JobObject(Protocol):
    @property
    def status(self) -> _Status: ...


_J = TypeVar("_J", bound=_JobObject)


def group_by_status(jobs: Sequence[_J]) -> tuple[list[_J], list[_J], list[_J]]:
    """Split jobs into ``(running, failed, successful)``, keeping their order."""
    running: list[_J] = []
    failed: list[_J] = []
    successful: list[_J] = []
    for job in jobs:
        if job.status.has_succeeded():
            successful.append(job)
        elif job.status.has_failed():
            failed.append(job)
        else:
            running.append(job)
    return running, failed, successful