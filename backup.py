#!/usr/bin/env python3
"""
Database snapshots: create, prune, restore and health-check.

Snapshots are single-file SQLite copies named ``feedkeeper-YYYY-MM-DD-HHMMSS.db``
(UTC, second resolution). They are written online with ``VACUUM INTO`` through a
read-only connection in a worker thread, so the service keeps serving while a
snapshot is taken. Restore is destructive and must only run while the service
is stopped.
"""

import os
import re
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from config import get_logger
from errors import BackupError, RestoreError
from telemetry import trace_span

logger = get_logger("backup")

SNAPSHOT_PREFIX = "feedkeeper-"
SNAPSHOT_SUFFIX = ".db"
SNAPSHOT_TIME_FORMAT = "%Y-%m-%d-%H%M%S"
SNAPSHOT_NAME_RE = re.compile(r"^feedkeeper-(\d{4}-\d{2}-\d{2}-\d{6})\.db$")

# Returned by latest_backup_age() when no usable snapshot exists
INFINITE_AGE = timedelta.max

_SIDE_FILE_SUFFIXES = ("-wal", "-shm", "-journal")


def _as_utc(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return datetime.now(timezone.utc)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def snapshot_name(moment: Optional[datetime] = None) -> str:
    """Return the snapshot file name for `moment` (defaults to now, UTC)."""
    return f"{SNAPSHOT_PREFIX}{_as_utc(moment).strftime(SNAPSHOT_TIME_FORMAT)}{SNAPSHOT_SUFFIX}"


def parse_snapshot_time(name: str) -> Optional[datetime]:
    """Return the UTC timestamp encoded in a snapshot name, or None if it is not one."""
    match = SNAPSHOT_NAME_RE.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), SNAPSHOT_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _remove_quietly(file_path: str) -> None:
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {file_path}: {e}")


def _list_snapshots(backup_dir: str) -> List[str]:
    """Names of regular files in `backup_dir` that match the snapshot pattern."""
    names = []
    with os.scandir(backup_dir) as entries:
        for entry in entries:
            if SNAPSHOT_NAME_RE.match(entry.name) and entry.is_file(follow_symlinks=False):
                names.append(entry.name)
    return names


@trace_span("backup.create", tracer_name="backup", attr_from_args=lambda conn, backup_dir, **kw: {"backup.dir": backup_dir})
def create_backup(conn: sqlite3.Connection, backup_dir: str, now: Optional[datetime] = None) -> str:
    """Write a consistent snapshot of the database behind `conn` into `backup_dir`.

    Returns the path of the new snapshot. Raises BackupError on failure, in
    which case no partial snapshot is left behind. A snapshot that already
    exists under the same name (two snapshots within one second) is never
    overwritten or removed.
    """
    try:
        os.makedirs(backup_dir, exist_ok=True)
    except OSError as e:
        raise BackupError(f"Cannot create backup directory {backup_dir}: {e}", {"dir": backup_dir}) from e

    dest = os.path.join(backup_dir, snapshot_name(now))
    # Claim the name atomically; VACUUM INTO accepts an empty target file
    try:
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError as e:
        raise BackupError(f"Snapshot {dest} already exists", {"path": dest}) from e
    except OSError as e:
        raise BackupError(f"Cannot create snapshot {dest}: {e}", {"path": dest}) from e
    os.close(fd)

    try:
        conn.execute("VACUUM INTO ?", (dest,))
        # The copy inherits the live journal mode; make it one self-contained file
        snap = sqlite3.connect(dest)
        try:
            snap.execute("PRAGMA journal_mode=DELETE")
        finally:
            snap.close()
    except sqlite3.Error as e:
        for file_path in (dest, *(dest + s for s in _SIDE_FILE_SUFFIXES)):
            _remove_quietly(file_path)
        raise BackupError(f"Snapshot to {dest} failed: {e}", {"path": dest}) from e

    logger.info(f"💾 Snapshot written: {dest} ({os.path.getsize(dest)} bytes)")
    return dest


def snapshot_database(db_path: str, backup_dir: str, now: Optional[datetime] = None,
                      busy_timeout_ms: int = 5000) -> str:
    """Snapshot the database file at `db_path` through its own read-only connection.

    Meant to run in a worker thread while the live connection keeps writing.
    """
    try:
        conn = _open_read_only(db_path)
    except sqlite3.Error as e:
        raise BackupError(f"Cannot open {db_path} for snapshot: {e}", {"path": db_path}) from e
    try:
        conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        return create_backup(conn, backup_dir, now=now)
    finally:
        conn.close()


@trace_span("backup.prune", tracer_name="backup", attr_from_args=lambda backup_dir, keep: {"backup.keep": keep})
def prune_backups(backup_dir: str, keep: int) -> int:
    """Delete all but the newest `keep` snapshots. Returns how many were removed.

    `keep <= 0` disables pruning. Files that do not match the snapshot naming
    pattern are never touched. A failed deletion is logged and skipped.
    """
    if keep <= 0:
        return 0
    if not os.path.isdir(backup_dir):
        raise BackupError(f"Backup directory {backup_dir} does not exist", {"dir": backup_dir})

    try:
        names = sorted(_list_snapshots(backup_dir))
    except OSError as e:
        raise BackupError(f"Cannot list backup directory {backup_dir}: {e}", {"dir": backup_dir}) from e

    removed = 0
    for name in names[:-keep]:
        file_path = os.path.join(backup_dir, name)
        try:
            os.remove(file_path)
            removed += 1
            logger.info(f"🗑️ Pruned old snapshot {name}")
        except OSError as e:
            logger.warning(f"Failed to remove old snapshot {file_path}: {e}")
    return removed


def _open_read_only(db_path: str) -> sqlite3.Connection:
    uri = Path(db_path).resolve().as_uri() + "?mode=ro"
    return sqlite3.connect(uri, uri=True)


def is_valid_database(db_path: str) -> bool:
    """True if `db_path` opens read-only as SQLite and answers a liveness query."""
    try:
        conn = _open_read_only(db_path)
    except sqlite3.Error:
        return False
    try:
        conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        return True
    except sqlite3.Error:
        return False
    finally:
        conn.close()


def validate_backup(backup_path: str) -> None:
    """Check that `backup_path` is a non-empty, readable SQLite file; raise RestoreError otherwise."""
    try:
        st = os.stat(backup_path)
    except FileNotFoundError as e:
        raise RestoreError(f"Backup file not found: {backup_path}") from e
    except OSError as e:
        raise RestoreError(f"Cannot access backup file {backup_path}: {e}") from e

    if os.path.isdir(backup_path):
        raise RestoreError(f"Backup path is a directory, not a file: {backup_path}")
    if not os.path.isfile(backup_path):
        raise RestoreError(f"Backup path is not a regular file: {backup_path}")
    if st.st_size == 0:
        raise RestoreError(f"Backup file is empty: {backup_path}")
    if not is_valid_database(backup_path):
        raise RestoreError(f"Backup file is not a valid SQLite database: {backup_path}")


@trace_span("backup.restore", tracer_name="backup")
def restore_backup(backup_path: str, target_path: str) -> None:
    """Replace the live database at `target_path` with the snapshot at `backup_path`.

    The snapshot is validated before anything is touched. The bytes are copied
    to a temporary sibling of the target, which keeps the target's permissions
    (0644 for a new file), and moved over the target in one step. Only then are
    the old ``-wal``/``-shm``/``-journal`` files removed, so they are never
    replayed onto the restored file. The service must not be running.
    """
    validate_backup(backup_path)

    target_dir = os.path.dirname(os.path.abspath(target_path))
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".restore-", suffix=".db", dir=target_dir)
    except OSError as e:
        raise RestoreError(f"Cannot stage restore in {target_dir}: {e}") from e
    os.close(fd)

    try:
        shutil.copyfile(backup_path, tmp_path)
        if os.path.exists(target_path):
            shutil.copymode(target_path, tmp_path)
        else:
            os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, target_path)
    except OSError as e:
        _remove_quietly(tmp_path)
        raise RestoreError(f"Restore of {backup_path} to {target_path} failed: {e}") from e

    for suffix in _SIDE_FILE_SUFFIXES:
        try:
            os.remove(target_path + suffix)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise RestoreError(
                f"Restored {target_path} but could not remove stale {target_path + suffix}: {e}; "
                "delete it before starting the service"
            ) from e

    logger.info(f"♻️ Restored {target_path} from {backup_path}")


def _snapshots_newest_first(backup_dir: str) -> List[Tuple[datetime, str]]:
    candidates = []
    for name in _list_snapshots(backup_dir):
        ts = parse_snapshot_time(name)
        if ts is not None:
            candidates.append((ts, os.path.join(backup_dir, name)))
    candidates.sort(reverse=True)
    return candidates


def latest_backup_age(backup_dir: str, now: Optional[datetime] = None) -> timedelta:
    """Age of the newest usable snapshot in `backup_dir`.

    Snapshots are ordered by the timestamp in their names. Empty or unreadable
    files are skipped in favour of the next newest. Returns INFINITE_AGE if the
    directory is missing or holds no usable snapshot.
    """
    current = _as_utc(now)
    try:
        candidates = _snapshots_newest_first(backup_dir)
    except FileNotFoundError:
        return INFINITE_AGE
    except OSError as e:
        logger.warning(f"Cannot list backup directory {backup_dir}: {e}")
        return INFINITE_AGE

    for ts, file_path in candidates:
        try:
            if os.path.getsize(file_path) == 0:
                logger.warning(f"Ignoring empty snapshot {file_path}")
                continue
        except OSError:
            continue
        if not is_valid_database(file_path):
            logger.warning(f"Ignoring unreadable snapshot {file_path}")
            continue
        return current - ts
    return INFINITE_AGE
