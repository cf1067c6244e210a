"""Running the restic binary with wired-up input and output streams."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Mapping, Protocol

PROGRESS_FPS_VARIABLE = "RESTIC_PROGRESS_FPS"
_PROGRESS_FREQUENCY = 1.0 / 60.0
_CHUNK_SIZE = 32 * 1024
_PARTIAL_SUCCESS_EXIT_CODE = 3


class Writer(Protocol):
    def write(self, data: bytes) -> int: ...


class CommandError(RuntimeError):
    """Raised when a command cannot be started or ends with a failure."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


@dataclass
class CommandOptions:
    """What to run and where its streams go."""

    path: str
    args: list[str] = field(default_factory=list)
    stdin: BinaryIO | None = None
    stdout: Writer | None = None
    stderr: Writer | None = None


def with_progress_fps(env: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of ``env`` that defines the restic progress frequency."""
    result = dict(env)
    result.setdefault(PROGRESS_FPS_VARIABLE, f"{_PROGRESS_FREQUENCY:f}")
    return result


class Command:
    """A single invocation of an external program."""

    def __init__(self, options: CommandOptions, logger: logging.Logger | None = None) -> None:
        self.options = options
        self._log = (logger or logging.getLogger(__name__)).getChild("command")
        self._env: dict[str, str] | None = None
        self._process: subprocess.Popen[bytes] | None = None
        self._threads: list[threading.Thread] = []
        self._copy_errors: list[BaseException] = []

    def run(self) -> None:
        """Configure, start and wait for the command."""
        self.configure()
        self.start()
        self.wait()

    def configure(self) -> None:
        """Prepare the environment of the command."""
        self._log.info("restic command: path=%s args=%s", self.options.path, self.options.args)
        if PROGRESS_FPS_VARIABLE not in os.environ:
            self._log.info("Defining %s: frequency=%f", PROGRESS_FPS_VARIABLE, _PROGRESS_FREQUENCY)
        self._env = with_progress_fps(os.environ)

    def start(self) -> None:
        """Start the command without waiting for it."""
        if self._env is None:
            raise CommandError("command not configured")
        opts = self.options

        stdout_target = subprocess.PIPE if opts.stdout is not None else subprocess.DEVNULL
        if opts.stderr is None:
            stderr_target = subprocess.DEVNULL
        elif opts.stderr is opts.stdout:
            stderr_target = subprocess.STDOUT
        else:
            stderr_target = subprocess.PIPE

        try:
            self._process = subprocess.Popen(
                [opts.path, *opts.args],
                stdin=subprocess.PIPE if opts.stdin is not None else subprocess.DEVNULL,
                stdout=stdout_target,
                stderr=stderr_target,
                env=self._env,
            )
        except OSError as exc:
            raise CommandError(f"cmd.Start() err: {exc}") from exc

        process = self._process
        if opts.stdin is not None:
            self._spawn(self._feed, opts.stdin, process.stdin)
        if stdout_target == subprocess.PIPE:
            self._spawn(self._drain, process.stdout, opts.stdout)
        if stderr_target == subprocess.PIPE:
            self._spawn(self._drain, process.stderr, opts.stderr)

    def wait(self) -> None:
        """Wait for the command and its stream copying to finish."""
        if self._env is None:
            raise CommandError("command not configured")
        if self._process is None:
            raise CommandError(
                "the process did not start, please check if execution bit is set"
            )

        returncode = self._process.wait()
        for thread in self._threads:
            thread.join()
        self._threads.clear()

        # Exit code 3 means the snapshot was created but some files could not
        # be read; the backup summary reports that.
        if returncode not in (0, _PARTIAL_SUCCESS_EXIT_CODE):
            code = returncode if returncode > 0 else -1
            raise CommandError(f"cmd.Wait() err: {code}", code)
        if self._copy_errors:
            error = self._copy_errors[0]
            raise CommandError(f"cmd.Wait() err: {error}") from error

    def _spawn(self, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        self._threads.append(thread)

    def _feed(self, source: BinaryIO, target: BinaryIO) -> None:
        try:
            while chunk := source.read(_CHUNK_SIZE):
                target.write(chunk)
        except BrokenPipeError:
            pass
        except Exception as exc:
            self._copy_errors.append(exc)
        finally:
            try:
                target.close()
            except OSError:
                pass

    def _drain(self, source, sink: Writer) -> None:
        try:
            while chunk := source.read1(_CHUNK_SIZE):
                sink.write(chunk)
        except Exception as exc:
            self._copy_errors.append(exc)
        finally:
            source.close()