[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "resticop"
version = "0.1.0"
description = "Drive restic backups, restores and retention, and schedule and queue backup jobs"
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["restic", "backup", "restore", "prune", "scheduler", "cron", "webhook", "prometheus"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Backup",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.setuptools.packages.find]
include = ["resticop*"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
