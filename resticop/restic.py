"""High-level operations on a restic repository."""

from __future__ import annotations

import io
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Iterable, Protocol

from .command import Command, CommandError, CommandOptions
from .config import Configuration
from .flags import Flags, combine
from .output import (
    BackupSummary,
    LineWriter,
    new_backup_output_parser,
    new_error_writer,
    new_info_writer,
    new_stdin_backup_output_parser,
)
from .stats import BackupStats, PrometheusProvider, WebhookProvider, parse_summary

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(
    r"(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<zone>Z|z|[+-]\d{2}:\d{2})?"
)
_INIT_ACCEPTED_ERRORS = ("already initialized", "already exists")
_LOCK_RETRY_SECONDS = 35.0


class ResticError(RuntimeError):
    """Raised when restic's output or the backup data cannot be handled."""


class _StatsSink(Protocol):
    def send_prometheus(self, provider: PrometheusProvider) -> None: ...

    def send_webhook(self, provider: WebhookProvider) -> None: ...


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid snapshot time {text!r}")
    iso = match["base"]
    if match["fraction"]:
        iso += "." + match["fraction"][:6].ljust(6, "0")
    zone = match["zone"]
    if zone in ("Z", "z"):
        iso += "+00:00"
    elif zone:
        iso += zone
    return datetime.fromisoformat(iso)


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"expected a list of strings, got {value!r}")
    return list(value)


@dataclass
class Snapshot:
    """One snapshot as listed by ``restic snapshots --json``."""

    id: str = ""
    time: datetime = _ZERO_TIME
    tree: str = ""
    paths: list[str] = field(default_factory=list)
    hostname: str = ""
    username: str = ""
    uid: int = 0
    gid: int = 0
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any) -> Snapshot:
        """Build a snapshot from one decoded JSON object."""
        if not isinstance(data, dict):
            raise ValueError(f"expected a snapshot object, got {data!r}")
        raw_time = data.get("time")
        return cls(
            id=str(data.get("id") or ""),
            time=_parse_time(raw_time) if raw_time else _ZERO_TIME,
            tree=str(data.get("tree") or ""),
            paths=_str_list(data.get("paths")),
            hostname=str(data.get("hostname") or ""),
            username=str(data.get("username") or ""),
            uid=int(data.get("uid") or 0),
            gid=int(data.get("gid") or 0),
            tags=_str_list(data.get("tags")),
        )


def build_tag_args(tags: Iterable[str] | None) -> list[str]:
    """Return ``--tag <tag>`` pairs for every tag."""
    args: list[str] = []
    for tag in tags or ():
        args.extend(("--tag", tag))
    return args


def prune_args(config: Configuration) -> list[str]:
    """Return the arguments of ``restic forget`` enforcing the retention policy."""
    args = ["--prune"]
    keep_n = {
        "--keep-last": config.prune_keep_last,
        "--keep-hourly": config.prune_keep_hourly,
        "--keep-daily": config.prune_keep_daily,
        "--keep-weekly": config.prune_keep_weekly,
        "--keep-monthly": config.prune_keep_monthly,
        "--keep-yearly": config.prune_keep_yearly,
    }
    for name, value in keep_n.items():
        if value > 0:
            args.extend((name, str(value)))

    keep_within = {
        "--keep-within": config.prune_keep_within,
        "--keep-within-hourly": config.prune_keep_within_hourly,
        "--keep-within-daily": config.prune_keep_within_daily,
        "--keep-within-weekly": config.prune_keep_within_weekly,
        "--keep-within-monthly": config.prune_keep_within_monthly,
        "--keep-within-yearly": config.prune_keep_within_yearly,
    }
    for name, value in keep_within.items():
        if value:
            args.extend((name, value))

    if config.prune_keep_tags:
        args.append("--keep-tag")
    if config.hostname:
        args.append(f"--host={config.hostname}")
    return args


def _path_base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _decode_snapshot_list(raw: bytes) -> list[Snapshot]:
    text = raw.decode("utf-8", errors="replace").lstrip()
    if not text:
        raise ResticError("cannot decode snapshot list: EOF")
    try:
        decoded, _ = json.JSONDecoder().raw_decode(text)
    except ValueError as exc:
        raise ResticError(f"cannot decode snapshot list: {exc}") from exc
    if decoded is None:
        return []
    if not isinstance(decoded, list):
        raise ResticError("cannot decode snapshot list: expected a JSON array")
    try:
        return [Snapshot.from_json(item) for item in decoded]
    except (TypeError, ValueError) as exc:
        raise ResticError(f"cannot decode snapshot list: {exc}") from exc


class _InitErrorCatcher:
    """Stderr writer that notices when the repository already exists."""

    def __init__(self, writer: LineWriter) -> None:
        self.exists = False
        self._writer = writer

    def write(self, data: bytes | str) -> int:
        text = data if isinstance(data, str) else bytes(data).decode("utf-8", errors="replace")
        for line in text.splitlines():
            if any(accepted in line for accepted in _INIT_ACCEPTED_ERRORS):
                self.exists = True
                return len(data)
        return self._writer.write(data)


class Restic:
    """Runs restic operations against the configured repository."""

    def __init__(
        self,
        config: Configuration,
        stats_handler: _StatsSink,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.stats_handler = stats_handler
        self.logger = logger or logging.getLogger("resticop")
        self.restic_path = config.restic_bin
        self.bucket = _path_base(config.restic_repository)
        self.known_snapshots: list[Snapshot] = []
        self.lock_retry_seconds = _LOCK_RETRY_SECONDS

        self.global_flags = Flags()
        options = config.restic_options.split(",")
        self.logger.info("using the following restic options: options=%s", options)
        self.global_flags.add_flag("--option", *options)

    # snapshots

    def snapshots(self, tags: Iterable[str] | None = None) -> list[Snapshot]:
        """List all snapshots, remember and return them."""
        return self._list_snapshots(tags, last=False)

    def last_snapshots(self, tags: Iterable[str] | None = None) -> list[Snapshot]:
        """List the latest snapshots for the given tags, remember and return them."""
        return self._list_snapshots(tags, last=True)

    def _list_snapshots(self, tags: Iterable[str] | None, last: bool) -> list[Snapshot]:
        log = self.logger.getChild("snapshots")
        log.info("getting list of snapshots")

        buffer = io.BytesIO()
        options = CommandOptions(
            path=self.restic_path,
            args=self.global_flags.apply_to_command("snapshots", "--json"),
            stdout=buffer,
            stderr=new_error_writer(log.getChild("restic")),
        )
        options.args.extend(build_tag_args(tags))

        failure: CommandError | None = None
        try:
            Command(options, log).run()
        except CommandError as exc:
            failure = exc

        self.known_snapshots = _decode_snapshot_list(buffer.getvalue())
        if failure is not None:
            raise failure
        return self.known_snapshots

    # maintenance

    def check(self) -> None:
        """Check the repository for errors."""
        log = self.logger.getChild("check")
        log.info("checking repository")
        restic_log = log.getChild("restic")
        options = CommandOptions(
            path=self.restic_path,
            args=self.global_flags.apply_to_command("check"),
            stdout=new_info_writer(restic_log),
            stderr=new_error_writer(restic_log),
        )
        Command(options, log).run()

    def init(self) -> None:
        """Initialise the repository unless it exists already; safe to repeat."""
        log = self.logger.getChild("RepoInit")
        restic_log = log.getChild("restic")
        catcher = _InitErrorCatcher(new_error_writer(restic_log))
        options = CommandOptions(
            path=self.restic_path,
            args=self.global_flags.apply_to_command("init"),
            stdout=new_info_writer(restic_log),
            stderr=catcher,
        )
        try:
            Command(options, log).run()
        except CommandError:
            if not catcher.exists:
                raise

    def unlock(self, all_locks: bool = False) -> None:
        """Remove stale locks, or every lock if ``all_locks`` is set."""
        log = self.logger.getChild("unlock")
        log.info("unlocking repository: all=%s", all_locks)
        restic_log = log.getChild("restic")
        options = CommandOptions(
            path=self.restic_path,
            args=self.global_flags.apply_to_command("unlock"),
            stdout=new_error_writer(restic_log),
            stderr=new_error_writer(restic_log),
        )
        if all_locks:
            options.args.append("--remove-all")
        Command(options, log).run()

    def wait(self) -> None:
        """Block until the repository holds no more locks."""
        log = self.logger.getChild("WaitForLocks")
        log.info("remove old locks")
        self.unlock(False)

        log.info("checking for any locks")
        while True:
            log.info("getting a list of active locks")
            if not self._lock_list(log):
                break
            log.info("locks found, retry in %g seconds", self.lock_retry_seconds)
            self.unlock(False)
            time.sleep(self.lock_retry_seconds)

        log.info("no more locks found")

    def _lock_list(self, log: logging.Logger) -> list[str]:
        locks: list[str] = []
        flags = combine(self.global_flags, {"--json": [], "--no-lock": []})
        options = CommandOptions(
            path=self.restic_path,
            args=flags.apply_to_command("list", "locks"),
            stdout=LineWriter(locks.append),
            stderr=new_error_writer(log.getChild("restic")),
        )
        Command(options, log).run()
        return locks

    def prune(self, tags: Iterable[str] | None = None) -> None:
        """Enforce the retention policy and report the remaining snapshots."""
        log = self.logger.getChild("prune")
        log.info("pruning repository")
        restic_log = log.getChild("restic")
        options = CommandOptions(
            path=self.restic_path,
            args=self.global_flags.apply_to_command("forget", *prune_args(self.config)),
            stdout=new_info_writer(restic_log),
            stderr=new_error_writer(restic_log),
        )
        options.args.extend(build_tag_args(tags))
        Command(options, log).run()
        self._send_post_webhook()

    # backups

    def backup(self, backup_dir: str | os.PathLike[str], tags: Iterable[str] | None = None) -> None:
        """Back up every sub-directory of ``backup_dir`` as its own snapshot."""
        log = self.logger.getChild("backup")
        log.info("starting backup")

        if not os.path.exists(backup_dir):
            log.info("backupdir does not exist, skipping. Sending snapshot list: dirname=%s", backup_dir)
            self._send_post_webhook()
            return

        try:
            entries = sorted(os.scandir(backup_dir), key=lambda entry: entry.name)
        except OSError as exc:
            raise ResticError(f"can't read backupdir '{os.fspath(backup_dir)}': {exc}") from exc

        tag_list = list(tags or ())
        for entry in entries:
            if entry.is_dir():
                self._folder_backup(os.path.join(os.fspath(backup_dir), entry.name), log, tag_list)

        log.info("backup finished, sending snapshot list")
        self._send_post_webhook()

    def _folder_backup(self, folder: str, log: logging.Logger, tags: list[str]) -> None:
        writer = new_backup_output_parser(log.getChild("progress"), folder, self.send_backup_stats)
        log.info("starting backup for folder: foldername=%s", os.path.basename(folder))
        flags = combine(self.global_flags, {"--host": [self.config.hostname], "--json": []})
        options = CommandOptions(
            path=self.restic_path,
            args=flags.apply_to_command("backup", folder),
            stdout=writer,
            stderr=writer,
        )
        self._trigger_backup(log, tags, options)

    def stdin_backup(
        self,
        stream: BinaryIO,
        filename: str,
        file_ext: str,
        tags: Iterable[str] | None = None,
    ) -> None:
        """Create a snapshot of the data read from ``stream``."""
        log = self.logger.getChild("stdinBackup")
        log.info("starting stdin backup: filename=%s extension=%s", filename, file_ext)
        full_name = f"{filename}{file_ext}"
        writer = new_stdin_backup_output_parser(
            log.getChild("progress"), full_name, self.send_backup_stats
        )
        flags = combine(
            self.global_flags,
            {
                "--host": [self.config.hostname],
                "--json": [],
                "--stdin": [],
                "--stdin-filename": [full_name],
            },
        )
        options = CommandOptions(
            path=self.restic_path,
            args=flags.apply_to_command("backup"),
            stdin=stream,
            stdout=writer,
            stderr=writer,
        )
        self._trigger_backup(log, list(tags or ()), options)

    def _trigger_backup(self, log: logging.Logger, tags: list[str], options: CommandOptions) -> None:
        options.args.extend(build_tag_args(tags))
        # The command waits for its input to be fully consumed before returning.
        Command(options, log).run()

    # statistics

    def send_backup_stats(
        self,
        summary: BackupSummary,
        error_count: int,
        folder: str,
        start_timestamp: int,
        end_timestamp: int,
    ) -> None:
        """Report the metrics of one finished backup to webhook and Prometheus."""
        metrics = parse_summary(
            summary,
            error_count,
            folder,
            start_timestamp,
            end_timestamp,
            len(self.known_snapshots),
            self.config.hostname,
            self.config.backup_dir,
        )
        stats = BackupStats(
            name=self.config.hostname, bucket_name=self.bucket, backup_metrics=metrics
        )
        try:
            self.stats_handler.send_webhook(stats)
        except Exception as exc:  # noqa: BLE001 - delivery failures are only logged
            self.logger.error("webhook send failed: %s", exc)
        try:
            self.stats_handler.send_prometheus(stats)
        except Exception as exc:  # noqa: BLE001 - delivery failures are only logged
            self.logger.error("prometheus send failed: %s", exc)

    def _send_post_webhook(self) -> None:
        try:
            self.snapshots(None)
        except (CommandError, ResticError) as exc:
            self.logger.error("cannot fetch current snapshot list for webhook: %s", exc)
        stats = BackupStats(
            name=self.config.hostname,
            bucket_name=self.bucket,
            snapshots=list(self.known_snapshots),
        )
        try:
            self.stats_handler.send_webhook(stats)
        except Exception as exc:  # noqa: BLE001 - delivery failures are only logged
            self.logger.error("webhook send failed: %s", exc)