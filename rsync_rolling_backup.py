#!/usr/bin/env python3
"""rsync-rolling-backup.py: Rolling, hard-linked daily snapshots of local folders using rsync.

Every run copies each source folder into ``<root>/<name>/<YYYY-MM-DD>`` on the
destination, hard linking unchanged files against the snapshot referenced by the
``last`` symlink, then points ``last`` at the new snapshot and removes the one
snapshot from exactly ``keep_days`` ago.

Only one snapshot is removed per run. If runs are skipped, the snapshots from the
skipped days are never swept and have to be removed by hand.
"""
from __future__ import annotations

import argparse
import asyncio
import configparser
import contextlib
import enum
import fcntl
import os
import re
import shlex
import signal
import sys
import tempfile
import time
from datetime import date, timedelta
from typing import IO, Callable, NamedTuple, Protocol

APPNAME = "rsync-rolling-backup.py"
VERBOSE = False
POINTER_NAME = "last"
POINTER_TMP_NAME = f".{POINTER_NAME}.new"
STREAM_CHUNK = 2**16


class SSH(NamedTuple):
    """SSH connection details for the backup destination."""

    host: str
    port: str
    id_rsa: str | None
    cmd: str


class Source(NamedTuple):
    """A local folder to back up, with its optional rsync exclude file."""

    path: str
    exclude_file: str | None = None


class RetentionPolicy(NamedTuple):
    """How long snapshots are kept."""

    keep_days: int
    keep_monthly_first: bool


class BackupConfig(NamedTuple):
    """Fully resolved configuration of one run."""

    sources: list[Source]
    remote_host: str
    remote_root: str
    policy: RetentionPolicy
    log_dir: str
    lock_dir: str
    port: str = "22"
    id_rsa: str | None = None
    jobs: int = 1
    rsync_set_flags: str = ""
    rsync_append_flags: str = ""


COLORS = {
    "green": "\033[92m",
    "magenta": "\033[95m",
    "yellow": "\033[93m",
    "red": "\033[91m",
    "orange": "\033[33m",
}


def style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    """Return styled text."""
    color_code = COLORS.get(color, "")  # type: ignore[arg-type]
    bold_code = "\033[1m" if bold else ""
    reset_code = "\033[0m"
    return f"{bold_code}{color_code}{text}{reset_code}"


def sanitize(s: str) -> str:
    """Return a sanitized version of the string."""
    return s.encode("utf-8", "surrogateescape").decode("utf-8", "replace")


def log(message: str, level: str = "info") -> None:
    """Log a message with the specified log level."""
    levels = {"info": "", "warning": "[WARNING] ", "error": "[ERROR] "}
    output = sys.stderr if level in {"warning", "error"} else sys.stdout
    message = sanitize(message)
    print(f"{style(APPNAME, bold=True)}: {levels[level]}{message}", file=output)


def log_info(message: str) -> None:
    """Log an info message to stdout."""
    log(message, "info")


def log_warn(message: str) -> None:
    """Log a warning message to stderr."""
    log(style(message, "orange"), "warning")


def log_error(message: str) -> None:
    """Log an error message to stderr."""
    log(style(message, "red", bold=True), "error")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class BackupError(Exception):
    """Base class for everything that can go wrong while backing up."""


class ConfigError(BackupError):
    """The configuration is incomplete or invalid."""


class AlreadyRunningError(BackupError):
    """Another run holds the lock for the same source."""


class TransferFailedError(BackupError):
    """rsync reported a non-zero exit status."""


class PointerUpdateFailedError(BackupError):
    """The ``last`` symlink could not be replaced after a successful transfer."""


# -----------------------------------------------------------------------------
# Per-run log file
# -----------------------------------------------------------------------------


ANSI_ESCAPE = re.compile(r"\033\[[0-9;]*m")


def strip_progress(line: str) -> str:
    """Collapse carriage-return progress redraws to the final state of the line."""
    parts = [part for part in line.rstrip().split("\r") if part.strip()]
    return parts[-1].rstrip() if parts else ""


def log_file_path(log_dir: str, name: str, day: date) -> str:
    """Return the path of the log file for one source and one run date."""
    return os.path.join(log_dir, f"backup{name}.{day.isoformat()}.log")


class RunLog:
    """Append-only log file of a single source's run, mirrored to the console."""

    def __init__(self, path: str, label: str) -> None:
        self.path = path
        self.label = label
        self._file: IO[str] | None = None

    def __enter__(self) -> RunLog:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self._file = open(self.path, "a", buffering=1, encoding="utf-8", errors="replace")  # noqa: SIM115
        return self

    def __exit__(self, *exc: object) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def write(self, line: str) -> None:
        """Append a line to the log file only."""
        assert self._file is not None, "RunLog is not open"
        line = ANSI_ESCAPE.sub("", sanitize(line))
        self._file.write(f"{strip_progress(line)}\n")

    def info(self, message: str) -> None:
        self.write(message)
        log_info(f"{style(self.label, bold=True)}: {message}")

    def warn(self, message: str) -> None:
        self.write(f"[WARNING] {message}")
        log_warn(f"{self.label}: {message}")

    def error(self, message: str) -> None:
        self.write(f"[ERROR] {message}")
        log_error(f"{self.label}: {message}")


# -----------------------------------------------------------------------------
# Locking
# -----------------------------------------------------------------------------


def lock_file_path(name: str, lock_dir: str) -> str:
    """Return the path of the lock file guarding one source."""
    return os.path.join(lock_dir, f"backup{name}.lock")


class RunLock:
    """Exclusive, non-blocking lock on a per-source lock file.

    The ``flock`` is bound to the open file, so the kernel drops it as soon
    as the owning process exits, however it exits. Calling :meth:`release`
    is optional. The lock file itself is left in place.
    """

    def __init__(self, path: str, handle: IO[str]) -> None:
        self.path = path
        self._handle: IO[str] | None = handle

    @classmethod
    def acquire(cls, name: str, lock_dir: str) -> RunLock:
        """Take the lock for ``name`` or raise `AlreadyRunningError` right away."""
        os.makedirs(lock_dir, exist_ok=True)
        path = lock_file_path(name, lock_dir)
        handle = open(path, "a")  # noqa: SIM115
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            msg = f"Lock file {path} in use, a backup of this source might already be running."
            raise AlreadyRunningError(msg) from None
        handle.truncate(0)
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        return cls(path, handle)

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> RunLock:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


# -----------------------------------------------------------------------------
# Retention
# -----------------------------------------------------------------------------


def candidate_for_deletion(today: date, keep_days: int) -> date:
    """Return the date of the snapshot that falls out of the window today."""
    return today - timedelta(days=keep_days)


def should_delete(day: date, keep_monthly_first: bool) -> bool:  # noqa: FBT001
    """Return whether the snapshot of ``day`` may be removed by the sweep."""
    return not (keep_monthly_first and day.day == 1)


async def sweep_retention(
    folder: str,
    today: date,
    policy: RetentionPolicy,
    ssh: SSH | None,
    run_log: RunLog,
) -> str | None:
    """Remove the single snapshot from ``policy.keep_days`` ago, if there is one.

    Returns the removed path. A missing snapshot is not an error, so sweeping
    the same day twice is harmless.
    """
    candidate = candidate_for_deletion(today, policy.keep_days)
    name = candidate.isoformat()
    path = os.path.join(folder, name)

    if not should_delete(candidate, policy.keep_monthly_first):
        run_log.info(f"Keeping {path} (first of the month).")
        return None

    if not await exists(path, ssh):
        run_log.write(f"No snapshot to remove at {path}.")
        return None

    if await read_pointer(folder, ssh) == name:
        run_log.warn(f"Not removing {path}, it is the current '{POINTER_NAME}' snapshot.")
        return None

    run_log.info(f"Removing {path}...")
    result = await rm_dir(path, ssh)
    if result.returncode != 0:
        run_log.warn(f"Could not remove {path}: {result.stderr}")
        return None
    return path


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


class CmdResult(NamedTuple):
    """Command result."""

    stdout: str
    stderr: str
    returncode: int


async def async_run_cmd(
    cmd: str,
    ssh: SSH | None = None,
    on_line: Callable[[str], None] | None = None,
    keep: Callable[[str], bool] | None = None,
) -> CmdResult:
    """Run a command locally or remotely.

    Only stdout lines accepted by ``keep`` end up in the result (all of them
    when ``keep`` is None). The command runs in its own process group, which
    is killed when the awaiting task is cancelled.
    """
    if VERBOSE:
        log_info(
            f"Running {'local' if ssh is None else 'remote'} command: {style(cmd, 'green', bold=True)}",
        )

    if ssh is not None:
        cmd = f"{ssh.cmd} {shlex.quote(cmd)}"

    process = await asyncio.create_subprocess_shell(
        cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )

    # Should not be None because of asyncio.subprocess.PIPE
    assert process.stdout is not None, "Process stdout is None"
    assert process.stderr is not None, "Process stderr is None"

    try:
        stdout, stderr = await asyncio.gather(
            read_stream(process.stdout, on_line, "magenta", keep),
            read_stream(process.stderr, on_line, "red"),
        )
        await process.wait()
    finally:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGTERM)
            await process.wait()

    assert process.returncode is not None, "Process has not returned"

    if VERBOSE and process.returncode != 0:
        msg = style(str(process.returncode), "red", bold=True)
        log_error(f"Command exit code: {msg}")
    return CmdResult(stdout, stderr, process.returncode)


def drop_redraws(pending: bytes) -> bytes:
    """Keep only the last finished redraw and the redraw in progress of a line."""
    *redraws, current = pending.split(b"\r")
    finished = [redraw for redraw in redraws if redraw.strip()]
    return finished[-1] + b"\r" + current if finished else current


async def read_stream(
    stream: asyncio.StreamReader,
    callback: Callable[[str], None] | None,
    color: str,
    keep: Callable[[str], bool] | None = None,
) -> str:
    """Read each line from the stream and pass it to the callback.

    Reads in chunks, so a line of progress redraws may grow without bound;
    only its final state is held in memory.
    """
    output = []
    pending = b""
    while True:
        chunk = await stream.read(STREAM_CHUNK)
        if chunk:
            *lines, pending = (pending + chunk).split(b"\n")
            pending = drop_redraws(pending)
        else:
            lines, pending = ([pending] if pending else []), b""
        for line in lines:
            line_str = strip_progress(line.decode("utf-8", "replace"))
            if keep is None or keep(line_str):
                output.append(line_str)
            if callback is not None:
                callback(line_str)
            if VERBOSE:
                log_info(f"Command output: {style(line_str, color, bold=True)}")
        if not chunk:
            break
    return "\n".join(output)


async def exists(path: str, ssh: SSH | None = None) -> bool:
    """Test if a file or folder exists."""
    return (await async_run_cmd(f"test -e {shlex.quote(path)}", ssh)).returncode == 0


async def mkdir(path: str, ssh: SSH | None = None) -> CmdResult:
    """Create a directory."""
    return await async_run_cmd(f"mkdir -p -- {shlex.quote(path)}", ssh)


async def rm_dir(path: str, ssh: SSH | None = None) -> CmdResult:
    """Remove a directory."""
    return await async_run_cmd(f"rm -rf -- {shlex.quote(path)}", ssh)


async def read_pointer(folder: str, ssh: SSH | None = None) -> str | None:
    """Return the snapshot name the ``last`` symlink in ``folder`` points at."""
    pointer = os.path.join(folder, POINTER_NAME)
    result = await async_run_cmd(f"readlink -- {shlex.quote(pointer)}", ssh)
    target = result.stdout.strip().rstrip("/")
    if result.returncode != 0 or not target:
        return None
    return os.path.basename(target)


async def update_pointer(folder: str, snapshot: str, ssh: SSH | None = None) -> None:
    """Point the ``last`` symlink in ``folder`` at ``snapshot``.

    The new link is made under a temporary name and renamed over the old
    one, so ``last`` is left as it was when any step fails.
    """
    cmd = (
        f"cd -- {shlex.quote(folder)}"
        f" && rm -f -- {POINTER_TMP_NAME}"
        f" && ln -s -- {shlex.quote(snapshot)} {POINTER_TMP_NAME}"
        f" && mv -Tf -- {POINTER_TMP_NAME} {POINTER_NAME}"
    )
    result = await async_run_cmd(cmd, ssh)
    if result.returncode != 0:
        msg = f"Could not point '{POINTER_NAME}' at {snapshot} in {folder}: {result.stderr.strip()}"
        raise PointerUpdateFailedError(msg)


# -----------------------------------------------------------------------------
# Transfer
# -----------------------------------------------------------------------------


class TransferResult(NamedTuple):
    """Outcome of one snapshot transfer."""

    success: bool
    bytes_transferred: int
    error_output: str


class SnapshotTransfer(Protocol):
    """Copies a source folder into a new snapshot folder."""

    async def transfer(
        self,
        source: Source,
        destination: str,
        base_snapshot: str | None,
        run_log: RunLog,
    ) -> TransferResult:
        """Copy ``source`` to ``destination``, hard linking unchanged files to ``base_snapshot``."""
        ...


def get_rsync_flags(rsync_set_flags: str = "", rsync_append_flags: str = "") -> list[str]:
    """Get the rsync flags."""
    rsync_flags = [
        "--numeric-ids",
        "--archive",
        "--verbose",
        "--stats",
        "--progress",
        "--human-readable",
    ]

    if rsync_set_flags:
        rsync_flags = rsync_set_flags.split()

    if rsync_append_flags:
        rsync_flags += rsync_append_flags.split()
    return rsync_flags


def get_rsh(ssh: SSH) -> str:
    """Return the remote shell rsync uses; keeps the SSH overhead low."""
    id_rsa_option = f" -i {shlex.quote(ssh.id_rsa)}" if ssh.id_rsa else ""
    return f"ssh -T -x -o Compression=no -p {ssh.port}{id_rsa_option}"


def build_rsync_cmd(
    src_folder: str,
    dest: str,
    rsync_flags: list[str],
    *,
    exclusion_file: str | None,
    link_dest: str | None,
    ssh: SSH | None,
) -> str:
    """Return the rsync command line for one snapshot."""
    cmd = "rsync"
    if ssh is not None:
        cmd = f"{cmd} -e {shlex.quote(get_rsh(ssh))}"
        dest = f"{ssh.host}:{dest}"

    cmd = f"{cmd} {' '.join(rsync_flags)}"
    if exclusion_file:
        cmd = f"{cmd} --exclude-from={shlex.quote(exclusion_file)}"
    if link_dest:
        cmd = f"{cmd} --link-dest={shlex.quote(link_dest)}"
    src_folder = src_folder.rstrip("/")
    return f"{cmd} -- {shlex.quote(src_folder + '/')} {shlex.quote(dest + '/')}"


_UNITS = "KMGTP"
TRANSFERRED_STAT = "Total transferred file size:"


def parse_transferred_bytes(stats: str) -> int:
    """Return the 'Total transferred file size' from rsync --stats output.

    Handles the plain, digit-grouped and ``--human-readable`` (powers of 1000)
    forms. Returns 0 when the line is missing.
    """
    match = re.search(
        rf"{TRANSFERRED_STAT}\s*([\d.,]+)\s*([KMGTP]?)\s*bytes",
        stats,
    )
    if not match:
        return 0
    number, unit = match.groups()
    value = float(number.replace(",", ""))
    if unit:
        value *= 1000 ** (_UNITS.index(unit) + 1)
    return round(value)


class RsyncTransfer:
    """Transfer snapshots with rsync, over SSH when the destination is remote."""

    def __init__(self, rsync_flags: list[str], ssh: SSH | None = None) -> None:
        self.rsync_flags = rsync_flags
        self.ssh = ssh

    async def transfer(
        self,
        source: Source,
        destination: str,
        base_snapshot: str | None,
        run_log: RunLog,
    ) -> TransferResult:
        cmd = build_rsync_cmd(
            source.path,
            destination,
            self.rsync_flags,
            exclusion_file=source.exclude_file,
            link_dest=base_snapshot,
            ssh=self.ssh,
        )
        run_log.info(style("Running command:", bold=True))
        run_log.info(style(cmd, "green"))
        result = await async_run_cmd(
            cmd,
            on_line=run_log.write,
            keep=lambda line: line.startswith(TRANSFERRED_STAT),
        )
        return TransferResult(
            result.returncode == 0,
            parse_transferred_bytes(result.stdout),
            result.stderr,
        )


# -----------------------------------------------------------------------------
# Orchestration
# -----------------------------------------------------------------------------


class Outcome(enum.Enum):
    """Final state of one source in a run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PathResult(NamedTuple):
    """Result of backing up one source."""

    source: str
    outcome: Outcome
    snapshot: str | None = None
    error: str | None = None


def sanitize_source_name(path: str) -> str:
    """Flatten a local path into one folder name, e.g. ``/home/me`` -> ``_home_me``."""
    return path.replace("/", "_")


def today_date() -> date:
    """Return the current local date."""
    return date.today()


def destination_label(folder: str, ssh: SSH | None) -> str:
    return f"{ssh.host}:{folder}" if ssh else folder


async def _backup_locked(
    source: Source,
    folder: str,
    today: date,
    *,
    policy: RetentionPolicy,
    transfer: SnapshotTransfer,
    ssh: SSH | None,
    run_log: RunLog,
) -> PathResult:
    """Transfer, then do the bookkeeping. Runs with the source's lock held."""
    start = time.monotonic()
    snapshot = today.isoformat()
    dest = os.path.join(folder, snapshot)
    label = destination_label(dest, ssh)

    try:
        if not os.path.isdir(source.path):
            msg = f"Source folder '{source.path}' does not exist - aborting."
            raise BackupError(msg)

        result = await mkdir(folder, ssh)
        if result.returncode != 0:
            msg = f"Could not create {destination_label(folder, ssh)}: {result.stderr.strip()}"
            raise BackupError(msg)

        base = await read_pointer(folder, ssh)
        if base is None:
            run_log.info("No previous backup - creating new one.")
            link_dest = None
        elif base == snapshot:
            run_log.info(f"Snapshot {snapshot} already exists - updating it in place.")
            link_dest = None
        else:
            link_dest = os.path.join(folder, base)
            run_log.info(
                style(f"Previous backup found - doing incremental backup from {base}", "yellow"),
            )

        run_log.info(style("Starting backup...", "yellow"))
        run_log.info(f"From: {style(source.path, bold=True)}/")
        run_log.info(f"To:   {style(label, bold=True)}/")
        transferred = await transfer.transfer(source, dest, link_dest, run_log)
        if not transferred.success:
            error = transferred.error_output.strip()
            msg = f"Problem with backup of {source.path} to {label}"
            raise TransferFailedError(f"{msg}: {error}" if error else msg)
    except BackupError as e:
        run_log.error(str(e))
        return PathResult(source.path, Outcome.FAILED, error=str(e))

    run_log.info(f"Transferred {transferred.bytes_transferred} bytes.")
    try:
        await update_pointer(folder, snapshot, ssh)
    except PointerUpdateFailedError as e:
        run_log.warn(f"{e} - the next backup may not be incremental.")

    await sweep_retention(folder, today, policy, ssh, run_log)
    run_log.info(f"Finished in {time.monotonic() - start:.0f}s.")
    return PathResult(source.path, Outcome.SUCCEEDED, snapshot=snapshot)


async def backup_source(
    source: Source,
    *,
    remote_root: str,
    policy: RetentionPolicy,
    transfer: SnapshotTransfer,
    ssh: SSH | None,
    log_dir: str,
    lock_dir: str,
    today: date | None = None,
) -> PathResult:
    """Back up a single source into ``remote_root`` and expire one old snapshot."""
    today = today or today_date()
    name = sanitize_source_name(source.path)
    folder = os.path.join(remote_root, name)

    try:
        lock = RunLock.acquire(name, lock_dir)
    except AlreadyRunningError as e:
        log_error(f"{source.path}: {e}")
        return PathResult(source.path, Outcome.FAILED, error=str(e))

    with lock:
        try:
            with RunLog(log_file_path(log_dir, name, today), source.path) as run_log:
                return await _backup_locked(
                    source,
                    folder,
                    today,
                    policy=policy,
                    transfer=transfer,
                    ssh=ssh,
                    run_log=run_log,
                )
        except OSError as e:
            log_error(f"{source.path}: {e}")
            return PathResult(source.path, Outcome.FAILED, error=str(e))


async def run_backups(
    sources: list[Source],
    *,
    jobs: int = 1,
    **kwargs,
) -> list[PathResult]:
    """Back up all sources, at most ``jobs`` at a time.

    Each source succeeds or fails on its own; the results come back in the
    order of ``sources``.
    """
    semaphore = asyncio.Semaphore(max(jobs, 1))

    async def _backup(source: Source) -> PathResult:
        async with semaphore:
            return await backup_source(source, **kwargs)

    outcomes = await asyncio.gather(
        *(_backup(source) for source in sources),
        return_exceptions=True,
    )
    results = []
    for source, outcome in zip(sources, outcomes):
        if isinstance(outcome, Exception):
            log_error(f"{source.path}: unexpected error: {outcome!r}")
            outcome = PathResult(source.path, Outcome.FAILED, error=repr(outcome))
        elif isinstance(outcome, BaseException):
            raise outcome
        results.append(outcome)
    return results


def exit_status(results: list[PathResult]) -> int:
    """Return 1 if any source failed, else 0."""
    return int(any(result.outcome is Outcome.FAILED for result in results))


def log_summary(results: list[PathResult]) -> None:
    for result in results:
        if result.outcome is Outcome.SUCCEEDED:
            log_info(f"{result.source}: {style('snapshot ' + str(result.snapshot), 'magenta')}")
        else:
            log_error(f"{result.source}: backup failed.")


def terminate_script(signal_number: int, task: asyncio.Task) -> None:
    """Cancel the running backups when SIGINT or SIGTERM is received."""
    log_info(f"{signal.Signals(signal_number).name} caught.")
    task.cancel()


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments and return the parsed arguments."""
    parser = argparse.ArgumentParser(
        description="Rolling daily backups of local folders using rsync --link-dest.",
        epilog="Only the snapshot from exactly KEEP_DAYS ago is removed per run."
        " Snapshots of days on which no run happened are never removed automatically.",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="INI file with a [backup] section and one [source:/path] section per source.",
    )
    parser.add_argument(
        "--host",
        help="Destination host, as HOST or USER@HOST. Omit to back up to a local folder.",
    )
    parser.add_argument("-p", "--port", help="SSH port. Default: 22")
    parser.add_argument("-i", "--id_rsa", help="Specify the private ssh key to use.")
    parser.add_argument(
        "--keep-days",
        type=int,
        help="Remove the snapshot from this many days ago after each backup.",
    )
    parser.add_argument(
        "--keep-monthly-first",
        action=argparse.BooleanOptionalAction,
        help="Never remove snapshots taken on the first day of a month.",
    )
    parser.add_argument(
        "--exclude-dir",
        help="Folder searched for 'backup<name>.exclude' pattern files."
        " Default: the folder of the config file.",
    )
    parser.add_argument(
        "--log-dir",
        help="Set the log file directory. Default: $HOME/.rsync-rolling-backup",
    )
    parser.add_argument(
        "--lock-dir",
        help="Directory holding the per-source lock files. Default: the system temp directory.",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        help="Number of sources backed up concurrently. Default: 1",
    )
    parser.add_argument(
        "--rsync-set-flags",
        help="Set the rsync flags that are going to be used for backup.",
    )
    parser.add_argument(
        "--rsync-append-flags",
        help="Append the rsync flags that are going to be used for backup.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output.",
    )
    parser.add_argument(
        "remote_root",
        nargs="?",
        help="Folder on the destination holding one sub folder per source.",
    )
    parser.add_argument(
        "sources",
        nargs="*",
        help="Local folders to back up.",
    )
    return parser.parse_args(argv)


CONFIG_SECTION = "backup"
SOURCE_SECTION_PREFIX = "source:"


def load_config_file(path: str) -> configparser.ConfigParser:
    """Read the INI configuration file."""
    parser = configparser.ConfigParser()
    try:
        found = parser.read(path)
    except configparser.Error as e:
        msg = f"Error reading config file {path}: {e}"
        raise ConfigError(msg) from e
    if not found:
        msg = f"Config file {path} does not exist or cannot be read."
        raise ConfigError(msg)
    return parser


def normalize_source_path(path: str) -> str:
    path = os.path.abspath(os.path.expanduser(path))
    return path.rstrip("/") if path != "/" else path


def resolve_exclude_file(
    source_path: str,
    exclude_file: str | None,
    exclude_dir: str | None,
) -> str | None:
    """Return the exclude file of a source.

    An explicitly configured file must exist; otherwise
    ``<exclude_dir>/backup<name>.exclude`` is used when present.
    """
    if exclude_file:
        exclude_file = os.path.expanduser(exclude_file)
        if not os.path.isfile(exclude_file):
            msg = f"Exclude file '{exclude_file}' for {source_path} does not exist."
            raise ConfigError(msg)
        return exclude_file
    if exclude_dir:
        candidate = os.path.join(exclude_dir, f"backup{sanitize_source_name(source_path)}.exclude")
        if os.path.isfile(candidate):
            return candidate
    return None


def _pick(cli_value, section: configparser.SectionProxy | None, key: str, getter: str = "get"):
    if cli_value is not None:
        return cli_value
    if section is None or key not in section:
        return None
    try:
        return getattr(section, getter)(key)
    except ValueError as e:
        msg = f"Invalid value for '{key}' in the config file: {e}"
        raise ConfigError(msg) from e


def check_no_single_quotes(config: BackupConfig) -> None:
    """Reject paths with single quotes, they do not survive the remote shell."""
    paths = [config.remote_root, config.log_dir, config.lock_dir]
    for source in config.sources:
        paths.append(source.path)
        if source.exclude_file:
            paths.append(source.exclude_file)
    quoted = [path for path in paths if "'" in path]
    if quoted:
        msg = f"Paths may not contain single quote characters: {', '.join(quoted)}"
        raise ConfigError(msg)


def build_config(args: argparse.Namespace) -> BackupConfig:
    """Merge defaults, the config file and command-line arguments."""
    section = None
    file_sources: list[tuple[str, str | None]] = []
    exclude_dir = args.exclude_dir
    if args.config:
        parser = load_config_file(args.config)
        if parser.has_section(CONFIG_SECTION):
            section = parser[CONFIG_SECTION]
        for name in parser.sections():
            if name.startswith(SOURCE_SECTION_PREFIX):
                path = name[len(SOURCE_SECTION_PREFIX) :].strip()
                file_sources.append((path, parser[name].get("exclude")))
        if exclude_dir is None:
            exclude_dir = _pick(None, section, "exclude_dir") or os.path.dirname(
                os.path.abspath(args.config),
            )

    remote_root = _pick(args.remote_root, section, "root")
    if not remote_root:
        msg = "No destination root given."
        raise ConfigError(msg)

    keep_days = _pick(args.keep_days, section, "keep_days", "getint")
    if keep_days is None or keep_days < 1:
        msg = "keep_days must be given and be at least 1."
        raise ConfigError(msg)
    keep_monthly_first = _pick(args.keep_monthly_first, section, "keep_monthly_first", "getboolean")

    jobs = _pick(args.jobs, section, "jobs", "getint")
    if jobs is None:
        jobs = 1
    elif jobs < 1:
        msg = "jobs must be at least 1."
        raise ConfigError(msg)

    raw_sources = [(path, None) for path in args.sources] if args.sources else file_sources
    if not raw_sources:
        msg = "No source folders given."
        raise ConfigError(msg)
    excludes = {normalize_source_path(path): exclude for path, exclude in file_sources}
    sources: dict[str, Source] = {}
    for path, exclude in raw_sources:
        path = normalize_source_path(path)
        exclude = exclude or excludes.get(path)
        sources[path] = Source(path, resolve_exclude_file(path, exclude, exclude_dir))

    log_dir = _pick(args.log_dir, section, "log_dir") or "$HOME/.rsync-rolling-backup"
    lock_dir = _pick(args.lock_dir, section, "lock_dir") or tempfile.gettempdir()
    config = BackupConfig(
        sources=list(sources.values()),
        remote_host=_pick(args.host, section, "host") or "",
        remote_root=remote_root.rstrip("/") or "/",
        policy=RetentionPolicy(keep_days, bool(keep_monthly_first)),
        log_dir=os.path.expandvars(os.path.expanduser(log_dir)),
        lock_dir=os.path.expandvars(os.path.expanduser(lock_dir)),
        port=str(_pick(args.port, section, "port") or "22"),
        id_rsa=_pick(args.id_rsa, section, "id_rsa"),
        jobs=jobs,
        rsync_set_flags=_pick(args.rsync_set_flags, section, "rsync_set_flags") or "",
        rsync_append_flags=_pick(args.rsync_append_flags, section, "rsync_append_flags") or "",
    )
    check_no_single_quotes(config)
    return config


def parse_ssh(host: str, *, port: str, id_rsa: str | None) -> SSH | None:
    """Return the SSH details of the destination, or None for a local destination."""
    if not host:
        return None
    if not re.match(r"^(?:[a-z0-9\._\-]+@)?[A-Za-z0-9.\-]+$", host):
        msg = f"Invalid destination host '{host}', expected HOST or USER@HOST."
        raise ConfigError(msg)
    id_rsa_opt = f"-i {shlex.quote(id_rsa)} " if id_rsa else ""
    return SSH(host, port, id_rsa, f"ssh -p {port} {id_rsa_opt}{host}")


async def async_main(config: BackupConfig, transfer: SnapshotTransfer | None = None) -> int:
    """Run all backups of ``config`` and return the exit status."""
    ssh = parse_ssh(config.remote_host, port=config.port, id_rsa=config.id_rsa)
    if transfer is None:
        flags = get_rsync_flags(config.rsync_set_flags, config.rsync_append_flags)
        transfer = RsyncTransfer(flags, ssh)

    task = asyncio.current_task()
    assert task is not None
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, terminate_script, signum, task)

    try:
        results = await run_backups(
            config.sources,
            jobs=config.jobs,
            remote_root=config.remote_root,
            policy=config.policy,
            transfer=transfer,
            ssh=ssh,
            log_dir=config.log_dir,
            lock_dir=config.lock_dir,
        )
    except asyncio.CancelledError:
        log_error(f"Backup interrupted - '{POINTER_NAME}' was not updated for unfinished sources.")
        return 1
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    log_summary(results)
    return exit_status(results)


def main(argv: list[str] | None = None) -> None:
    """Main function."""
    args = parse_arguments(argv)
    global VERBOSE
    VERBOSE = args.verbose
    try:
        config = build_config(args)
        parse_ssh(config.remote_host, port=config.port, id_rsa=config.id_rsa)
    except ConfigError as e:
        log_error(str(e))
        sys.exit(1)
    sys.exit(asyncio.run(async_main(config)))


if __name__ == "__main__":
    main()
