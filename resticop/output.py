"""Line-oriented writers that turn restic output into log records and stats."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class BackupSummary:
    """The summary message restic prints at the end of a backup."""

    message_type: str = ""
    files_new: int = 0
    files_changed: int = 0
    files_unmodified: int = 0
    dirs_new: int = 0
    dirs_changed: int = 0
    dirs_unmodified: int = 0
    data_blobs: int = 0
    tree_blobs: int = 0
    data_added: int = 0
    total_files_processed: int = 0
    total_bytes_processed: int = 0
    total_duration: float = 0.0
    snapshot_id: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> BackupSummary:
        """Build a summary from a decoded JSON message."""
        return cls(
            message_type=_str(data.get("message_type")),
            files_new=_int(data.get("files_new")),
            files_changed=_int(data.get("files_changed")),
            files_unmodified=_int(data.get("files_unmodified")),
            dirs_new=_int(data.get("dirs_new")),
            dirs_changed=_int(data.get("dirs_changed")),
            dirs_unmodified=_int(data.get("dirs_unmodified")),
            data_blobs=_int(data.get("data_blobs")),
            tree_blobs=_int(data.get("tree_blobs")),
            data_added=_int(data.get("data_added")),
            total_files_processed=_int(data.get("total_files_processed")),
            total_bytes_processed=_int(data.get("total_bytes_processed")),
            total_duration=_float(data.get("total_duration")),
            snapshot_id=_str(data.get("snapshot_id")),
        )


SummaryFunc = Callable[[BackupSummary, int, str, int, int], None]
PercentageFunc = Callable[[logging.Logger, float], None]


def _int(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return 0


def _float(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


class LineWriter:
    """A writer that hands every line of each written chunk to a function."""

    def __init__(self, out: Callable[[str], None]) -> None:
        self._out = out

    def write(self, data: bytes | str) -> int:
        """Split ``data`` into lines, pass each on and return its length."""
        text = data if isinstance(data, str) else bytes(data).decode("utf-8", errors="replace")
        lines = text.split("\n")
        if lines[-1] == "":
            lines.pop()
        for line in lines:
            self._out(line.removesuffix("\r"))
        return len(data)


def new_info_writer(logger: logging.Logger) -> LineWriter:
    """Writer logging each line at info level on the ``stdout`` child logger."""
    child = logger.getChild("stdout")
    return LineWriter(child.info)


def new_error_writer(logger: logging.Logger) -> LineWriter:
    """Writer logging each line at info level on the ``stderr`` child logger."""
    child = logger.getChild("stderr")
    return LineWriter(child.info)


def print_percentage(logger: logging.Logger, fraction: float) -> None:
    """Log the backup progress as a percentage."""
    logger.info("progress of backup: percentage=%s", f"{fraction * 100:.2f}%")


def ignore_percentage(logger: logging.Logger, fraction: float) -> None:
    """Leave progress out of the regular log, noting it only at debug level."""
    logger.debug("progress of backup not reported: fraction=%s", fraction)


class BackupOutputParser:
    """Interprets the JSON lines of ``restic backup --json``."""

    def __init__(
        self,
        logger: logging.Logger,
        folder: str,
        summary_func: SummaryFunc,
        percentage_func: PercentageFunc = print_percentage,
    ) -> None:
        self.logger = logger
        self.folder = folder
        self.summary_func = summary_func
        self.percentage_func = percentage_func
        self.error_count = 0

    def handle_line(self, line: str) -> None:
        """Act on one line of restic output."""
        try:
            envelope = json.loads(line)
        except ValueError:
            envelope = None
        if not isinstance(envelope, dict):
            self.logger.info("restic output: msg=%s", line)
            return

        message_type = envelope.get("message_type")
        if message_type == "error":
            self.error_count += 1
            error = envelope.get("error")
            op = _str(error.get("Op")) if isinstance(error, dict) else ""
            detail = f"{_str(envelope.get('item'))} during {_str(envelope.get('during'))} {op}"
            self.logger.error("error occurred during backup: %s", detail)
        elif message_type == "status":
            self.percentage_func(self.logger, _float(envelope.get("percent_done")))
        elif message_type == "summary":
            summary = BackupSummary.from_json(envelope)
            self.logger.info(
                "backup finished: new files=%d changed files=%d errors=%d",
                summary.files_new,
                summary.files_changed,
                self.error_count,
            )
            self.logger.info(
                "stats: time=%s bytes added=%d bytes processed=%d",
                summary.total_duration,
                summary.data_added,
                summary.total_bytes_processed,
            )
            self.summary_func(summary, self.error_count, self.folder, 1, int(time.time()))


def new_backup_output_parser(
    logger: logging.Logger, folder: str, summary_func: SummaryFunc
) -> LineWriter:
    """Writer parsing backup output and logging progress."""
    return LineWriter(BackupOutputParser(logger, folder, summary_func, print_percentage).handle_line)


def new_stdin_backup_output_parser(
    logger: logging.Logger, folder: str, summary_func: SummaryFunc
) -> LineWriter:
    """Writer parsing stdin backup output, without progress reports."""
    return LineWriter(BackupOutputParser(logger, folder, summary_func, ignore_percentage).handle_line)