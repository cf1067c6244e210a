from dataclasses import dataclass, field

from resticop.job import group_by_status


@dataclass
class _FakeStatus:
    succeeded: bool = False
    failed: bool = False

    def has_succeeded(self) -> bool:
        return self.succeeded

    def has_failed(self) -> bool:
        return self.failed


@dataclass(eq=False)
class _FakeJob:
    name: str
    status: _FakeStatus = field(default_factory=_FakeStatus)


def test_group_by_status():
    success_job = _FakeJob("job-success", _FakeStatus(succeeded=True))
    failed_job = _FakeJob("job-failed", _FakeStatus(failed=True))
    running_job = _FakeJob("job-running")

    running, failed, successful = group_by_status([success_job, failed_job, running_job])

    assert len(running) == 1
    assert running[0] is running_job
    assert len(failed) == 1
    assert failed[0] is failed_job
    assert len(successful) == 1
    assert successful[0] is success_job


def test_group_by_status_empty():
    assert group_by_status([]) == ([], [], [])


def test_success_takes_precedence_over_failure():
    job = _FakeJob("both", _FakeStatus(succeeded=True, failed=True))
    running, failed, successful = group_by_status([job])
    assert (running, failed) == ([], [])
    assert successful == [job]


def test_order_is_preserved():
    jobs = [_FakeJob(f"run-{index}") for index in range(3)]
    running, _, _ = group_by_status(jobs)
    assert [job.name for job in running] == ["run-0", "run-1", "run-2"]