"""Run restic backups, restores and retention, and schedule and queue backup jobs."""

__version__ = "0.1.0"