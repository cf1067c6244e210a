"""Configuration of the backup module and its validation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal

RESTORE_TYPE_S3 = "s3"
"""Restore into an S3 endpoint."""

RESTORE_TYPE_FOLDER = "folder"
"""Restore into a folder, usually a mounted volume."""

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_COMPONENT_RE = re.compile(_COMPONENT)
_BODY_RE = re.compile(rf"(?:{_COMPONENT})+")
_MAX_NANOS = (1 << 63) - 1


class ConfigError(ValueError):
    """Raised when the configuration is inconsistent."""


def parse_duration(text: str) -> int:
    """Parse a duration such as ``1h30m`` or ``-1.5s`` into nanoseconds."""
    negative = text.startswith("-")
    body = text[1:] if text[:1] in ("+", "-") else text
    if body == "0":
        return 0
    if not body or _BODY_RE.fullmatch(body) is None:
        raise ValueError(f'time: invalid duration "{text}"')
    total = sum(
        (Decimal(number) * _UNIT_NANOS[unit] for number, unit in _COMPONENT_RE.findall(body)),
        Decimal(0),
    )
    nanos = int(total)
    if nanos > _MAX_NANOS + (1 if negative else 0):
        raise ValueError(f'time: invalid duration "{text}"')
    return -nanos if negative else nanos


@dataclass
class Configuration:
    """Strongly typed settings of the backup module."""

    do_check: bool = False
    do_prune: bool = False
    do_restore: bool = False
    do_archive: bool = False

    backup_command_annotation: str = ""
    backup_file_extension_annotation: str = ""
    backup_dir: str = ""

    prom_url: str = ""
    webhook_url: str = ""

    hostname: str = ""
    kube_config: str = ""

    restic_bin: str = ""
    restic_repository: str = ""
    restic_options: str = ""

    restore_dir: str = ""
    restore_s3_endpoint: str = ""
    restore_s3_access_key: str = ""
    restore_s3_secret_key: str = ""
    restore_snap: str = ""
    restore_type: str = ""
    restore_filter: str = ""
    verify_restore: bool = False
    restore_trim_path: bool = False

    prune_keep_last: int = 0
    prune_keep_hourly: int = 0
    prune_keep_daily: int = 0
    prune_keep_weekly: int = 0
    prune_keep_monthly: int = 0
    prune_keep_yearly: int = 0
    prune_keep_tags: bool = False

    prune_keep_within: str = ""
    prune_keep_within_hourly: str = ""
    prune_keep_within_daily: str = ""
    prune_keep_within_weekly: str = ""
    prune_keep_within_monthly: str = ""
    prune_keep_within_yearly: str = ""

    tags: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """Raise ConfigError if the configuration is not consistent."""
        self._validate_restore()
        self._validate_prune()

    def _validate_prune(self) -> None:
        if not self.do_prune:
            return

        keep_n = {
            "keepLast": self.prune_keep_last,
            "keepHourly": self.prune_keep_hourly,
            "keepDaily": self.prune_keep_daily,
            "keepWeekly": self.prune_keep_weekly,
            "keepMonthly": self.prune_keep_monthly,
            "keepYearly": self.prune_keep_yearly,
        }
        for arg, value in keep_n.items():
            if value < 0:
                raise ConfigError(
                    f"the value of the argument {arg} must not be negative, but was set to '{value}'"
                )

        keep_within = {
            "keepWithin": self.prune_keep_within,
            "keepWithinHourly": self.prune_keep_within_hourly,
            "keepWithinDaily": self.prune_keep_within_daily,
            "keepWithinWeekly": self.prune_keep_within_weekly,
            "keepWithinMonthly": self.prune_keep_within_monthly,
            "keepWithinYearly": self.prune_keep_within_yearly,
        }
        for arg, value in keep_within.items():
            if not value:
                continue
            try:
                duration = parse_duration(value)
            except ValueError as exc:
                raise ConfigError(
                    f"the duration '{value}' of the argument {arg} is not valid: {exc}"
                ) from exc
            if duration <= 0:
                raise ConfigError(
                    f"the duration '{value}' of the argument {arg} must not be negative"
                )

    def _validate_restore(self) -> None:
        if not self.do_restore:
            return

        self.restore_type = self.restore_type.lower()
        if self.restore_type == RESTORE_TYPE_S3:
            if not self.restore_s3_endpoint:
                raise ConfigError(
                    f"if the restore type is set to '{RESTORE_TYPE_S3}', "
                    "then the restore s3 endpoint must be defined"
                )
            if not self.restore_s3_access_key:
                raise ConfigError(
                    f"if the restore type is set to '{RESTORE_TYPE_S3}', "
                    "then the restore s3 access key must be defined"
                )
            if not self.restore_s3_secret_key:
                raise ConfigError(
                    f"if the restore type is set to '{RESTORE_TYPE_S3}', "
                    "then the restore s3 secret key must be defined"
                )
        elif self.restore_type == RESTORE_TYPE_FOLDER:
            if not self.restore_dir:
                raise ConfigError(
                    f"if the restore type is set to '{RESTORE_TYPE_FOLDER}', "
                    "then the restore directory must be defined"
                )
        else:
            raise ConfigError(f"the restore type '{self.restore_type}' is unknown")