"""Backup and restore statistics as webhook JSON and Prometheus gauges."""

from __future__ import annotations

import dataclasses
import json
import logging
import math
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol, Sequence

from .output import BackupSummary

PROMETHEUS_NAMESPACE = "k8up"
PROMETHEUS_SUBSYSTEM = "backup_restic"

_METRIC_LABELS = ("pvc", "namespace")

_log = logging.getLogger(__name__)


class PrometheusProvider(Protocol):
    """Something that can be turned into Prometheus collectors."""

    def to_prom(self) -> list[GaugeVec]: ...


class WebhookProvider(Protocol):
    """Something that can be turned into a JSON webhook payload."""

    def to_json(self) -> bytes: ...


def _format_sample_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(value)


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class GaugeVec:
    """A gauge metric, optionally partitioned by label values."""

    def __init__(self, name: str, help_text: str, label_names: Sequence[str] = ()) -> None:
        self.name = f"{PROMETHEUS_NAMESPACE}_{PROMETHEUS_SUBSYSTEM}_{name}"
        self.help = help_text
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        if not self.label_names:
            self._values[()] = 0.0

    def set(self, labels: Sequence[str], value: float) -> None:
        """Set the gauge for the given label values."""
        key = tuple(labels)
        if len(key) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(key)}"
            )
        self._values[key] = float(value)

    def expose(self) -> str:
        """Render the gauge in the Prometheus text exposition format."""
        if not self._values:
            return ""
        lines = [
            f"# HELP {self.name} {_escape_help(self.help)}",
            f"# TYPE {self.name} gauge",
        ]
        for key in sorted(self._values):
            value = _format_sample_value(self._values[key])
            if key:
                pairs = ",".join(
                    f'{name}="{_escape_label_value(label)}"'
                    for name, label in zip(self.label_names, key)
                )
                lines.append(f"{self.name}{{{pairs}}} {value}")
            else:
                lines.append(f"{self.name} {value}")
        return "\n".join(lines) + "\n"


def _labelled(name: str, help_text: str) -> Any:
    return field(default_factory=lambda: GaugeVec(name, help_text, _METRIC_LABELS))


@dataclass
class PromMetrics:
    """The gauges reported after a backup."""

    errors: GaugeVec = _labelled("last_errors", "How many errors the backup or check had")
    available_snapshots: GaugeVec = field(
        default_factory=lambda: GaugeVec("available_snapshots", "How many snapshots are available")
    )
    new_files: GaugeVec = _labelled(
        "new_files_during_backup", "How many new files were backed up during the last backup"
    )
    changed_files: GaugeVec = _labelled(
        "changed_files_during_backup",
        "How many changed files were backed up during the last backup",
    )
    unmodified_files: GaugeVec = _labelled(
        "unmodified_files_during_backup", "How many files were skipped due to no modifications"
    )
    new_dirs: GaugeVec = _labelled(
        "new_directories_during_backup",
        "How many new directories were backed up during the last backup",
    )
    changed_dirs: GaugeVec = _labelled(
        "changed_directories_during_backup",
        "How many changed directories were backed up during the last backup",
    )
    unmodified_dirs: GaugeVec = _labelled(
        "unmodified_directories_during_backup",
        "How many directories were skipped due to no modifications",
    )
    data_transferred: GaugeVec = _labelled(
        "data_transferred_during_backup", "Amount of data transferred during last backup"
    )

    def to_prom(self) -> list[GaugeVec]:
        """Return all gauges as collectors."""
        return [
            self.errors,
            self.available_snapshots,
            self.new_files,
            self.changed_files,
            self.unmodified_files,
            self.new_dirs,
            self.changed_dirs,
            self.unmodified_dirs,
            self.data_transferred,
        ]


def _json_number(value: float) -> float | int:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e21:
        return int(value)
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        text = value.isoformat()
        if value.utcoffset() is not None and value.utcoffset().total_seconds() == 0:
            text = text[: -len("+00:00")] + "Z"
        return text
    if isinstance(value, date):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Mapping):
        return dict(value)
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def _dumps(data: dict[str, Any]) -> bytes:
    return json.dumps(
        data, separators=(",", ":"), ensure_ascii=False, default=_json_default
    ).encode("utf-8")


@dataclass
class RawMetrics:
    """Raw numbers collected at the end of a backup."""

    running_backup_duration: float = 0.0
    backup_start_timestamp: float = 0.0
    backup_end_timestamp: float = 0.0
    errors: float = 0.0
    new_files: float = 0.0
    changed_files: float = 0.0
    unmodified_files: float = 0.0
    new_dirs: float = 0.0
    changed_dirs: float = 0.0
    unmodified_dirs: float = 0.0
    data_transferred: float = 0.0
    mounted_pvcs: list[str] | None = None
    available_snapshots: float = 0.0
    folder: str = ""
    hostname: str = ""
    id: str = ""

    def prometheus(self) -> PromMetrics:
        """Return the gauges derived from these numbers."""
        metrics = PromMetrics()
        labels = (self.folder, self.hostname)
        metrics.available_snapshots.set((), self.available_snapshots)
        metrics.changed_dirs.set(labels, self.changed_dirs)
        metrics.changed_files.set(labels, self.changed_files)
        metrics.errors.set(labels, self.errors)
        metrics.new_dirs.set(labels, self.new_dirs)
        metrics.new_files.set(labels, self.new_files)
        metrics.unmodified_dirs.set(labels, self.unmodified_dirs)
        metrics.unmodified_files.set(labels, self.unmodified_files)
        return metrics

    def _to_dict(self) -> dict[str, Any]:
        return {
            "backup_start_timestamp": _json_number(self.backup_start_timestamp),
            "backup_end_timestamp": _json_number(self.backup_end_timestamp),
            "errors": _json_number(self.errors),
            "new_files": _json_number(self.new_files),
            "changed_files": _json_number(self.changed_files),
            "unmodified_files": _json_number(self.unmodified_files),
            "new_dirs": _json_number(self.new_dirs),
            "changed_dirs": _json_number(self.changed_dirs),
            "unmodified_dirs": _json_number(self.unmodified_dirs),
            "data_transferred": _json_number(self.data_transferred),
            "mounted_PVCs": self.mounted_pvcs,
            "Folder": self.folder,
            "id": self.id,
        }


@dataclass
class BackupStats:
    """Webhook payload after a backup: metrics and/or the snapshot list."""

    name: str = ""
    bucket_name: str = ""
    backup_metrics: RawMetrics | None = None
    snapshots: list[Any] = field(default_factory=list)

    def to_json(self) -> bytes:
        """Encode the stats as JSON, leaving out empty fields."""
        data: dict[str, Any] = {}
        if self.name:
            data["name"] = self.name
        if self.bucket_name:
            data["bucket_name"] = self.bucket_name
        if self.backup_metrics is not None:
            data["backup_metrics"] = self.backup_metrics._to_dict()
        if self.snapshots:
            data["snapshots"] = list(self.snapshots)
        return _dumps(data)

    def to_prom(self) -> list[GaugeVec]:
        """Return the Prometheus gauges of the backup metrics."""
        if self.backup_metrics is None:
            raise ValueError("backup stats carry no metrics")
        return self.backup_metrics.prometheus().to_prom()


@dataclass
class RestoreStats:
    """Webhook payload after a restore."""

    restore_location: str = ""
    snapshot_id: str = ""
    restored_files: list[str] = field(default_factory=list)

    def to_json(self) -> bytes:
        """Encode the stats as JSON, leaving out empty fields."""
        data: dict[str, Any] = {}
        if self.restore_location:
            data["restore_location"] = self.restore_location
        if self.snapshot_id:
            data["snapshot_ID"] = self.snapshot_id
        if self.restored_files:
            data["restored_files"] = list(self.restored_files)
        return _dumps(data)


def mounted_folders(backup_dir: str | os.PathLike[str]) -> list[str]:
    """Return the names of the directories directly inside ``backup_dir``."""
    log = _log.getChild("MountCollector")
    try:
        entries = sorted(os.scandir(backup_dir), key=lambda entry: entry.name)
    except FileNotFoundError:
        log.info("stats mount dir doesn't exist, skipping stats: dir=%s", backup_dir)
        return []
    except OSError as exc:
        log.error("can't list mounted folders for stats: %s", exc)
        return []
    return [entry.name for entry in entries if entry.is_dir()]


def parse_summary(
    summary: BackupSummary,
    error_count: int,
    folder: str,
    start_timestamp: int,
    end_timestamp: int,
    snapshot_count: int,
    hostname: str,
    backup_dir: str | os.PathLike[str],
) -> RawMetrics:
    """Build the raw metrics of a finished backup."""
    return RawMetrics(
        new_dirs=float(summary.dirs_new),
        new_files=float(summary.files_new),
        changed_files=float(summary.files_changed),
        unmodified_files=float(summary.files_unmodified),
        changed_dirs=float(summary.dirs_changed),
        unmodified_dirs=float(summary.dirs_unmodified),
        errors=float(error_count),
        mounted_pvcs=mounted_folders(backup_dir),
        available_snapshots=float(snapshot_count),
        folder=folder,
        hostname=hostname,
        backup_start_timestamp=float(start_timestamp),
        backup_end_timestamp=float(end_timestamp),
        running_backup_duration=summary.total_duration,
        data_transferred=float(summary.data_added),
        id=summary.snapshot_id,
    )