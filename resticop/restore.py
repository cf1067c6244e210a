"""Restoring snapshots into a folder or as compressed archives to S3."""

from __future__ import annotations

import gzip
import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, BinaryIO, Iterable, Protocol, Sequence

from .command import Command, CommandError, CommandOptions
from .config import RESTORE_TYPE_FOLDER, RESTORE_TYPE_S3
from .output import new_error_writer, new_info_writer
from .restic import Restic, ResticError, Snapshot, _parse_time
from .stats import RestoreStats

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_FOLDER_RESTORE_FILES = "not supported for folder restores"

_log = logging.getLogger(__name__)


class RestoreType(str, Enum):
    """Where a restore puts its data."""

    FOLDER = RESTORE_TYPE_FOLDER
    S3 = RESTORE_TYPE_S3


@dataclass
class RestoreOptions:
    """Options of a single restore."""

    restore_type: RestoreType | str = RestoreType.FOLDER
    restore_dir: str = ""
    restore_filter: str = ""
    verify: bool = False


class _Uploader(Protocol):
    def upload(self, name: str, stream: BinaryIO) -> None: ...


def _text(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {name} must be a string, got {value!r}")
    return value


def _number(value: Any, name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"field {name} must be an integer, got {value!r}")
    return value


def _moment(value: Any, name: str) -> datetime:
    if value is None:
        return _ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"field {name} must be a timestamp, got {value!r}")
    return _parse_time(value)


@dataclass(frozen=True)
class FileNode:
    """One entry printed by ``restic ls --json``."""

    name: str = ""
    type: str = ""
    path: str = ""
    uid: int = 0
    gid: int = 0
    size: int = 0
    mode: int = 0
    mtime: datetime = _ZERO_TIME
    atime: datetime = _ZERO_TIME
    ctime: datetime = _ZERO_TIME
    struct_type: str = ""

    @classmethod
    def from_json(cls, data: Any) -> FileNode:
        """Build a node from one decoded JSON object."""
        if not isinstance(data, dict):
            raise ValueError(f"expected a node object, got {data!r}")
        return cls(
            name=_text(data.get("name"), "name"),
            type=_text(data.get("type"), "type"),
            path=_text(data.get("path"), "path"),
            uid=_number(data.get("uid"), "uid"),
            gid=_number(data.get("gid"), "gid"),
            size=_number(data.get("size"), "size"),
            mode=_number(data.get("mode"), "mode"),
            mtime=_moment(data.get("mtime"), "mtime"),
            atime=_moment(data.get("atime"), "atime"),
            ctime=_moment(data.get("ctime"), "ctime"),
            struct_type=_text(data.get("struct_type"), "struct_type"),
        )


def latest_snapshot(snapshots: Sequence[Snapshot], snapshot_id: str) -> Snapshot:
    """Return the snapshot whose ID starts with ``snapshot_id``, or the last one."""
    if not snapshots:
        _log.error("no snapshots available")
        raise ResticError("no snapshots available")

    if not snapshot_id:
        _log.info("no snapshot defined, using latest one")
        snapshot = snapshots[-1]
        _log.info("found snapshot: date=%s", snapshot.time)
        return snapshot

    # Prefix matching allows short IDs.
    for snapshot in snapshots:
        if snapshot.id.startswith(snapshot_id):
            return snapshot

    _log.error("the snapshot does not exist: %s", snapshot_id)
    raise ResticError(f"no Snapshot found with ID {snapshot_id}")


def extract_file_nodes(output: str) -> list[FileNode]:
    """Return the file entries from ``restic ls --json`` output, in order."""
    nodes: list[FileNode] = []
    for line in output.split("\n"):
        try:
            node = FileNode.from_json(json.loads(line))
        except ValueError:
            continue
        if node.type == "file":
            nodes.append(node)
    return nodes


def tar_info_for(node: FileNode) -> tarfile.TarInfo:
    """Return the tar header describing a single backed-up file."""
    info = tarfile.TarInfo(node.path.replace("/", "", 1))
    info.size = node.size
    info.mode = node.mode
    info.uid = node.uid
    info.gid = node.gid
    info.mtime = int(node.mtime.timestamp()) if node.mtime != _ZERO_TIME else 0
    return info


def _path_base(path: str) -> str:
    if not path:
        return "."
    stripped = path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _pvc_name(snapshot: Snapshot) -> str:
    if not snapshot.paths:
        raise ResticError(f"snapshot {snapshot.id} has no paths")
    return _path_base(snapshot.paths[-1])


def _rfc3339(moment: datetime) -> str:
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    offset = moment.utcoffset()
    if offset is None or offset.total_seconds() == 0:
        return text + "Z"
    minutes = int(offset.total_seconds()) // 60
    sign = "+" if minutes >= 0 else "-"
    hours, rest = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{rest:02d}"


def archive_name(snapshot: Snapshot) -> str:
    """Return the object name of the archive of ``snapshot``."""
    return f"backup-{snapshot.hostname}-{_pvc_name(snapshot)}-{_rfc3339(snapshot.time)}.tar.gz"


class _TarGzipWriter:
    """Writes a single-member tar archive, compressed with gzip."""

    def __init__(self, target: BinaryIO, info: tarfile.TarInfo) -> None:
        self._gzip = gzip.GzipFile(fileobj=target, mode="wb")
        try:
            header = info.tobuf(tarfile.PAX_FORMAT, "utf-8", "surrogateescape")
            self._gzip.write(header)
        except Exception as exc:
            self._gzip.close()
            raise ResticError(f"unable to write the given tar header: {exc}") from exc
        self._remaining = info.size
        self._padding = (-info.size) % tarfile.BLOCKSIZE

    def write(self, data: bytes) -> int:
        chunk = bytes(data)
        if len(chunk) > self._remaining:
            self._gzip.write(chunk[: self._remaining])
            self._remaining = 0
            raise ResticError("tar: write too long")
        self._gzip.write(chunk)
        self._remaining -= len(chunk)
        return len(chunk)

    def close(self) -> None:
        try:
            if self._remaining:
                raise ResticError(f"tar: missed writing {self._remaining} bytes")
            self._gzip.write(b"\0" * (self._padding + 2 * tarfile.BLOCKSIZE))
        finally:
            self._gzip.close()


def _archive_writer(target: BinaryIO, info: tarfile.TarInfo | None):
    if info is None:
        return gzip.GzipFile(fileobj=target, mode="wb")
    return _TarGzipWriter(target, info)


def _link_restore_paths(snapshot: Snapshot, restore_dir: str, temp_root: str | None = None) -> str:
    """Link the snapshot's second path level to ``restore_dir`` under a temp root.

    This strips the first two levels of the snapshot path, so the root of the
    backed-up volume becomes the root of the restored one.
    """
    if not snapshot.paths:
        raise ResticError(f"snapshot {snapshot.id} has no paths")
    parts = [part for part in snapshot.paths[0].split("/")[:3] if part]
    restore_root = os.path.join(temp_root or tempfile.gettempdir(), "restore")
    absolute = os.path.normpath(os.path.join(restore_root, *parts)) if parts else restore_root

    os.makedirs(restore_dir, exist_ok=True)
    os.makedirs(os.path.dirname(absolute), exist_ok=True)
    os.symlink(restore_dir, absolute)
    return restore_root


def _folder_restore(
    restic: Restic,
    restore_dir: str,
    snapshot: Snapshot,
    restore_filter: str,
    verify: bool,
    log: logging.Logger,
) -> None:
    trim = restic.config.restore_trim_path
    cleanup_root: str | None = None
    if trim:
        cleanup_root = _link_restore_paths(snapshot, restore_dir)
        linked_dir = cleanup_root
    else:
        linked_dir = restore_dir

    try:
        log.info(
            "folder restore: restoreDir=%s trimPath=%s linkedDir=%s restoreFilter=%s snapshotID=%s",
            restore_dir,
            trim,
            linked_dir,
            restore_filter,
            snapshot.id,
        )
        args = [snapshot.id, "--target", linked_dir]
        if restore_filter:
            args.extend(("--include", restore_filter))
        if verify:
            args.append("--verify")

        restic_log = log.getChild("restic")
        options = CommandOptions(
            path=restic.restic_path,
            args=restic.global_flags.apply_to_command("restore", *args),
            stdout=new_info_writer(restic_log),
            stderr=new_error_writer(restic_log),
        )
        try:
            Command(options, log).run()
        except CommandError as exc:
            log.error("restic restore failed: %s", exc)
    finally:
        if cleanup_root is not None:
            try:
                shutil.rmtree(cleanup_root)
            except OSError as exc:
                log.error("unable to clean up the files: path=%s: %s", cleanup_root, exc)


def _snapshot_root(
    restic: Restic, snapshot: Snapshot, log: logging.Logger, stats: RestoreStats
) -> tuple[str, tarfile.TarInfo | None]:
    """Return the path to dump and, for a single-file snapshot, its tar header."""
    buffer = io.BytesIO()
    options = CommandOptions(
        path=restic.restic_path,
        args=restic.global_flags.apply_to_command("ls", "--json", snapshot.id),
        stdout=buffer,
    )
    try:
        Command(options, log).run()
    except CommandError as exc:
        log.error("listing the snapshot failed: %s", exc)

    # A backup from stdin always lists exactly one file.
    nodes = extract_file_nodes(buffer.getvalue().decode("utf-8", errors="replace"))
    stats.restored_files.extend(node.path for node in nodes)
    if len(nodes) == 1:
        return nodes[0].path, tar_info_for(nodes[0])
    if not snapshot.paths:
        raise ResticError(f"snapshot {snapshot.id} has no paths")
    return snapshot.paths[-1], None


def _dump(restic: Restic, log: logging.Logger, snapshot: Snapshot, root: str, writer) -> None:
    options = CommandOptions(
        path=restic.restic_path,
        args=restic.global_flags.apply_to_command("dump", snapshot.id, root),
        stdout=writer,
        stderr=new_error_writer(log.getChild("restic")),
    )
    try:
        Command(options, log).run()
    except CommandError as exc:
        log.error("restic dump failed: %s", exc)


def _s3_restore(
    restic: Restic,
    log: logging.Logger,
    snapshot: Snapshot,
    stats: RestoreStats,
    uploader: _Uploader,
) -> None:
    log.info("S3 chosen as restore destination")
    file_name = archive_name(snapshot)
    stats.restore_location = f"{restic.config.restore_s3_endpoint}/{file_name}"
    stats.snapshot_id = snapshot.id

    latest = latest_snapshot(restic.known_snapshots, stats.snapshot_id)
    root, info = _snapshot_root(restic, latest, log, stats)

    with tempfile.TemporaryFile() as archive_file:
        writer = _archive_writer(archive_file, info)
        try:
            log.info("starting restore: s3 filename=%s", stats.restore_location)
            _dump(restic, log, latest, root, writer)
            log.info("restore finished")
        finally:
            try:
                writer.close()
            except Exception as exc:  # noqa: BLE001 - closing failures are only logged
                log.error("Unable to close the TarGzipWriter: %s", exc)
        archive_file.seek(0)
        uploader.upload(file_name, archive_file)


def restore(
    restic: Restic,
    snapshot_id: str,
    options: RestoreOptions,
    tags: Iterable[str] | None = None,
    uploader: _Uploader | None = None,
) -> None:
    """Restore a snapshot as described by ``options`` and report it by webhook."""
    log = restic.logger.getChild("restore")
    log.info("restore initialised")

    tag_list = list(tags or ())
    if tag_list:
        log.info("loading snapshots: tags=%s", ", ".join(tag_list))
    else:
        log.info("loading all snapshots from repositoy")

    snapshots = restic.snapshots(tag_list)
    snapshot = latest_snapshot(snapshots, snapshot_id)

    try:
        restore_type = RestoreType(options.restore_type)
    except ValueError as exc:
        raise ResticError("no valid restore type") from exc

    if restore_type is RestoreType.FOLDER:
        _folder_restore(
            restic, options.restore_dir, snapshot, options.restore_filter, options.verify, log
        )
        stats = RestoreStats(
            restore_location=options.restore_dir,
            restored_files=[_FOLDER_RESTORE_FILES],
            snapshot_id=snapshot.id,
        )
    else:
        if uploader is None:
            raise ResticError("an S3 restore needs an uploader")
        stats = RestoreStats()
        _s3_restore(restic, log, snapshot, stats, uploader)

    restic.stats_handler.send_webhook(stats)


def archive(
    restic: Restic,
    restore_filter: str,
    verify: bool,
    tags: Iterable[str] | None,
    uploader: _Uploader,
) -> None:
    """Upload the latest snapshot of every host as an archive to S3."""
    log = restic.logger.getChild("archive")
    try:
        restic.last_snapshots(tags)
    except (CommandError, ResticError) as exc:
        log.error("could not list snapshots: %s", exc)

    log.info("archiving latest snapshots for every host")
    for snapshot in list(restic.known_snapshots):
        log.info(
            "starting archival for: namespace=%s pvc=%s", snapshot.hostname, _pvc_name(snapshot)
        )
        restore(
            restic,
            snapshot.id,
            RestoreOptions(
                restore_type=RestoreType.S3, restore_filter=restore_filter, verify=verify
            ),
            None,
            uploader,
        )