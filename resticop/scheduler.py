"""Cron schedules that periodically create backup, check or prune jobs."""

from __future__ import annotations

import itertools
import logging
import random
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
_RANDOM_LENGTH = 5
_MAX_NAME_LENGTH = 63
_SEARCH_YEARS = 5
_MAX_SLEEP_SECONDS = 60.0

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}
_DOW_NAMES = {
    name: number
    for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}
_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
_NUMBER = re.compile(r"\d+")


def _parse_every(text: str) -> timedelta:
    body = text
    sign = 1
    if body[:1] in ("+", "-") and body:
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if not body:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    if body != "0":
        position = 0
        while position < len(body):
            match = _DURATION_PART.match(body, position)
            if match is None:
                raise ValueError(f"invalid duration {text!r}")
            total += float(match[1]) * _DURATION_UNITS[match[2]]
            position = match.end()
    seconds = int(sign * total)
    return timedelta(seconds=max(seconds, 1))


def _parse_value(text: str, names: dict[str, int], spec: str) -> int:
    lowered = text.lower()
    if lowered in names:
        return names[lowered]
    if not _NUMBER.fullmatch(text):
        raise ValueError(f"failed to parse {text!r} in {spec!r}")
    return int(text)


def _parse_field(
    text: str, low: int, high: int, names: dict[str, int]
) -> tuple[frozenset[int], bool]:
    values: set[int] = set()
    star = False
    for part in text.split(","):
        if not part:
            raise ValueError(f"empty element in field {text!r}")
        range_part, has_step, step_text = part.partition("/")
        step = 1
        if has_step:
            if not _NUMBER.fullmatch(step_text):
                raise ValueError(f"failed to parse step {step_text!r} in {part!r}")
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"step of range should be a positive number: {part!r}")
        if range_part in ("*", "?"):
            start, end = low, high
            if step == 1:
                star = True
        else:
            first, has_dash, last = range_part.partition("-")
            start = _parse_value(first, names, part)
            if has_dash:
                end = _parse_value(last, names, part)
            elif has_step:
                end = high
            else:
                end = start
        if start < low:
            raise ValueError(f"beginning of range ({start}) below minimum ({low}): {part!r}")
        if end > high:
            raise ValueError(f"end of range ({end}) above maximum ({high}): {part!r}")
        if start > end:
            raise ValueError(f"beginning of range ({start}) beyond end of range ({end}): {part!r}")
        values.update(range(start, end + 1, step))
    return frozenset(values), star


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression: five fields, a descriptor or ``@every <duration>``."""

    minutes: frozenset[int] = frozenset()
    hours: frozenset[int] = frozenset()
    days_of_month: frozenset[int] = frozenset()
    months: frozenset[int] = frozenset()
    days_of_week: frozenset[int] = frozenset()
    dom_star: bool = False
    dow_star: bool = False
    every: timedelta | None = None
    location: tzinfo | None = None

    @classmethod
    def parse(cls, spec: str) -> CronSchedule:
        """Parse a cron specification; raise ValueError if it is not valid."""
        text = spec.strip()
        if not text:
            raise ValueError("empty spec string")

        location: tzinfo | None = None
        if text.startswith(("TZ=", "CRON_TZ=")):
            zone_part, _, rest = text.partition(" ")
            zone_name = zone_part.split("=", 1)[1]
            try:
                location = ZoneInfo(zone_name)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"provided bad location {zone_name!r}") from exc
            text = rest.strip()

        if text.startswith("@"):
            if text.startswith("@every "):
                return cls(every=_parse_every(text[len("@every "):].strip()), location=location)
            expanded = _DESCRIPTORS.get(text)
            if expanded is None:
                raise ValueError(f"unrecognized descriptor: {text!r}")
            text = expanded

        fields = text.split()
        if len(fields) != 5:
            raise ValueError(f"expected exactly 5 fields, found {len(fields)}: {text!r}")
        minutes, _ = _parse_field(fields[0], 0, 59, {})
        hours, _ = _parse_field(fields[1], 0, 23, {})
        dom, dom_star = _parse_field(fields[2], 1, 31, {})
        months, _ = _parse_field(fields[3], 1, 12, _MONTH_NAMES)
        dow, dow_star = _parse_field(fields[4], 0, 6, _DOW_NAMES)
        return cls(
            minutes=minutes,
            hours=hours,
            days_of_month=dom,
            months=months,
            days_of_week=dow,
            dom_star=dom_star,
            dow_star=dow_star,
            location=location,
        )

    def _day_matches(self, moment: datetime) -> bool:
        dom_match = moment.day in self.days_of_month
        dow_match = (moment.weekday() + 1) % 7 in self.days_of_week
        if self.dom_star or self.dow_star:
            return dom_match and dow_match
        return dom_match or dow_match

    def next_after(self, moment: datetime) -> datetime | None:
        """Return the first activation strictly after ``moment``, or None if there is none.

        With a location the result is expressed in that time zone.
        """
        if self.every is not None:
            return moment.replace(microsecond=0) + self.every

        current = moment.astimezone(self.location) if self.location is not None else moment
        current = current.replace(second=0, microsecond=0) + timedelta(minutes=1)
        year_limit = current.year + _SEARCH_YEARS

        while current.year <= year_limit:
            if current.month not in self.months:
                if current.month == 12:
                    current = current.replace(year=current.year + 1, month=1, day=1, hour=0, minute=0)
                else:
                    current = current.replace(month=current.month + 1, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(current):
                current = current.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if current.hour not in self.hours:
                current = current.replace(minute=0) + timedelta(hours=1)
                continue
            if current.minute not in self.minutes:
                current += timedelta(minutes=1)
                continue
            return current
        return None


@dataclass
class ScheduledJob:
    """A job type to create whenever its schedule fires."""

    job_type: str
    schedule: str
    object: Any = None


@dataclass
class JobList:
    """The scheduled jobs of one schedule object and how to create them."""

    jobs: list[ScheduledJob] = field(default_factory=list)
    namespace: str = ""
    name: str = ""
    create: Callable[[ScheduledJob, str, str], None] | None = None
    logger: logging.Logger | None = None

    @property
    def namespaced_name(self) -> str:
        """The ``namespace/name`` key of the schedule object."""
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class _ScheduleRef:
    entry_id: int
    job_type: str
    schedule: str
    command: Callable[[], None]


@dataclass
class _Entry:
    schedule: CronSchedule
    command: Callable[[], None]
    next_run: datetime | None = None


def _now() -> datetime:
    return datetime.now().astimezone()


def generate_name(job_type: str, prefix: str) -> str:
    """Return ``<prefix>-<job_type>-<random>``, shortening the prefix to fit 63 characters."""
    remaining = max(_MAX_NAME_LENGTH - _RANDOM_LENGTH - len(job_type) - 2, 0)
    short_prefix = prefix[:remaining]
    suffix = "".join(random.choices(_NAME_ALPHABET, k=_RANDOM_LENGTH))
    return f"{short_prefix}-{job_type}-{suffix}"


class Scheduler:
    """Runs the registered schedules and keeps track of them per schedule object."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._wakeup = threading.Condition(self._lock)
        self._entries: dict[int, _Entry] = {}
        self._ids = itertools.count(1)
        self._running = False
        self._thread: threading.Thread | None = None
        self.registered_schedules: dict[str, list[_ScheduleRef]] = {}
        self.schedule_gauge: Counter[str] = Counter()

    # cron runner

    def start(self) -> None:
        """Start firing the schedules in a background thread."""
        with self._lock:
            if self._running:
                return
            self._running = True
            now = _now()
            for entry in self._entries.values():
                entry.next_run = entry.schedule.next_after(now)
            self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        """Stop firing schedules; commands already started keep running."""
        with self._wakeup:
            if not self._running:
                return
            self._running = False
            self._wakeup.notify_all()
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join()

    def _run(self) -> None:
        with self._wakeup:
            while self._running:
                now = _now()
                for entry in self._entries.values():
                    if entry.next_run is not None and entry.next_run <= now:
                        self._launch(entry.command)
                        entry.next_run = entry.schedule.next_after(now)
                upcoming = [e.next_run for e in self._entries.values() if e.next_run is not None]
                timeout = _MAX_SLEEP_SECONDS
                if upcoming:
                    delay = (min(upcoming) - _now()).total_seconds()
                    timeout = min(max(delay, 0.0), _MAX_SLEEP_SECONDS)
                self._wakeup.wait(timeout)

    def _launch(self, command: Callable[[], None]) -> None:
        def runner() -> None:
            try:
                command()
            except Exception:  # noqa: BLE001 - a failing command must not stop the scheduler
                self._log.exception("scheduled command failed")

        threading.Thread(target=runner, name="scheduled-command", daemon=True).start()

    def _add_entry(self, schedule: CronSchedule, command: Callable[[], None]) -> int:
        with self._wakeup:
            entry_id = next(self._ids)
            entry = _Entry(schedule, command)
            if self._running:
                entry.next_run = schedule.next_after(_now())
            self._entries[entry_id] = entry
            self._wakeup.notify_all()
            return entry_id

    def _remove_entry(self, entry_id: int) -> None:
        with self._wakeup:
            self._entries.pop(entry_id, None)
            self._wakeup.notify_all()

    # schedule registry

    def sync_schedules(self, jobs: JobList) -> None:
        """Replace the schedules of the object named in ``jobs`` with its current jobs."""
        key = jobs.namespaced_name
        self.remove_schedules(key)
        log = jobs.logger or self._log
        with self._lock:
            for job in jobs.jobs:
                log.info("registering schedule for: type=%s cron=%s", job.job_type, job.schedule)
                self.add_schedule(job, key, self._schedule_callback(jobs, job, log))
            self.schedule_gauge[jobs.namespace] += 1

    def _schedule_callback(
        self, jobs: JobList, job: ScheduledJob, log: logging.Logger
    ) -> Callable[[], None]:
        def callback() -> None:
            log.info("running schedule for: job=%s", job.job_type)
            self._create_object(jobs, job, log)

        return callback

    @staticmethod
    def _create_object(jobs: JobList, job: ScheduledJob, log: logging.Logger) -> None:
        name = generate_name(job.job_type, jobs.name)
        if jobs.create is None:
            log.error("no way to create objects, dropping job: name=%s/%s", jobs.namespace, name)
            return
        try:
            jobs.create(job, name, jobs.namespace)
        except Exception as exc:  # noqa: BLE001 - creation failures are only logged
            log.error("could not trigger k8up job: name=%s/%s: %s", jobs.namespace, name, exc)

    def add_schedule(
        self, job: ScheduledJob, namespaced_name: str, command: Callable[[], None]
    ) -> int:
        """Register ``command`` to run on the job's schedule; return the entry id."""
        schedule = CronSchedule.parse(str(job.schedule))
        with self._lock:
            entry_id = self._add_entry(schedule, command)
            self.registered_schedules.setdefault(namespaced_name, []).append(
                _ScheduleRef(entry_id, job.job_type, job.schedule, command)
            )
            return entry_id

    def has_schedule(self, namespaced_name: str, schedule: str, job_type: str) -> bool:
        """Tell whether the object has a schedule of this job type and cron expression."""
        with self._lock:
            return any(
                ref.schedule == schedule and ref.job_type == job_type
                for ref in self.registered_schedules.get(namespaced_name, ())
            )

    def remove_schedules(self, namespaced_name: str) -> None:
        """Remove every schedule registered for the object, if any."""
        namespace = namespaced_name.split("/", 1)[0]
        with self._lock:
            refs = self.registered_schedules.pop(namespaced_name, [])
            if refs:
                self.schedule_gauge[namespace] -= 1
            for ref in refs:
                self._remove_entry(ref.entry_id)


_scheduler: Scheduler | None = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> Scheduler:
    """Return the shared scheduler, creating and starting it on first use."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = Scheduler()
            _scheduler.start()
        return _scheduler