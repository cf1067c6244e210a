# resticop

A library for running the `restic` backup program from Python and for
keeping track of the backup jobs that use it.

## What it does

- **Repository work** (`resticop.restic.Restic`): initialise a repository
  (safe to repeat), back up every sub-folder of a directory or a stream of
  data, list snapshots, check the repository, remove locks, wait until the
  repository holds no locks, and apply a retention policy with `prune`.
- **Restores** (`resticop.restore`): restore a snapshot into a folder, or
  pack it as a `.tar.gz` and hand it to an uploader; `archive` does this for
  the latest snapshot of every host.
- **Statistics** (`resticop.stats`, `resticop.stats_handler`): turn a backup
  summary into gauges, push them to a Prometheus push gateway and post JSON
  to a webhook.
- **Job handling** (`resticop.observer`, `resticop.execution_queue`,
  `resticop.scheduler`, `resticop.job`): watch jobs and react to their
  events, queue jobs for each repository so that exclusive jobs go first,
  run callbacks from cron schedules, and sort jobs by their status.

## Installation

```
pip install .
```

The `restic` binary must be installed; its path goes into the
configuration.

## Configuration

```python
from resticop.config import Configuration

config = Configuration(
    restic_bin="/usr/local/bin/restic",
    restic_repository="s3:http://localhost:9000/backups",
    hostname="my-namespace",
    backup_dir="/data",
    do_prune=True,
    prune_keep_daily=7,
    prune_keep_within="72h",
)
config.validate()  # raises ConfigError if the settings do not fit together
```

`validate` rejects negative keep counts, keep-within values that are not
positive durations such as `"1h30m"` (see `parse_duration`), and restore
settings that are incomplete for the chosen restore type (`"s3"` or
`"folder"`) when `do_restore` is set.

## Backing up

```python
import logging

from resticop.restic import Restic
from resticop.stats_handler import StatsHandler

logger = logging.getLogger("backup")
handler = StatsHandler(
    prom_url="http://localhost:9091",
    prom_hostname=config.hostname,
    webhook_url="",
    logger=logger,
)
restic = Restic(config, handler, logger)

restic.init()
restic.backup(config.backup_dir, ["daily"])
restic.prune(["daily"])
```

A `restic` run that cannot be started or ends with a failing exit status
raises `resticop.command.CommandError`; output that cannot be understood
raises `resticop.restic.ResticError`. Exit status 3, which restic uses when
a snapshot was made but some files could not be read, does not count as a
failure; such files show up in the error count of the backup statistics.

An empty `webhook_url` or `prom_url` turns that target off. Delivery
failures during a backup are logged, not raised.

## Restoring

```python
from resticop.restore import RestoreOptions, RestoreType, restore

restore(
    restic,
    "",  # empty: the latest snapshot; otherwise an ID or ID prefix
    RestoreOptions(restore_type=RestoreType.FOLDER, restore_dir="/restore"),
    [],
    None,
)
```

For `RestoreType.S3` pass an uploader: an object with a method
`upload(name, stream)` that receives the archive's file name and a readable
binary stream holding the `.tar.gz` data.

## Job handling

- `resticop.observer.get_observer()` returns a started `Observer`. Feed it
  `ObservableJob` events with `publish`, and use `register_callback` to be
  told when a job succeeds, fails or is deleted.
- `resticop.execution_queue.get_exec_queue()` returns an `ExecutionQueue`;
  `add` queues an executor for its repository and `get` hands out exclusive
  executors before the others.
- `resticop.scheduler.get_scheduler()` returns a started `Scheduler`.
  `sync_schedules(JobList(...))` replaces the schedules of one object; each
  `ScheduledJob` fires the `create` callback of the `JobList` with a name
  from `generate_name`, which stays within 63 characters and ends in a
  random five-character suffix. `CronSchedule.parse` accepts five-field
  expressions, descriptors such as `@daily`, and `@every <duration>`.
- `resticop.job.group_by_status(jobs)` splits jobs into running, failed and
  successful ones.

## What it does not do

There is no command-line program; everything is used from Python. The
package does not talk to Kubernetes: it neither lists nor executes commands
in pods, and the job objects, their creation and their status are supplied
by the caller. It has no S3 client of its own; S3 restores need an uploader
from the caller.

## Tests

```
pip install .[test]
pytest
```